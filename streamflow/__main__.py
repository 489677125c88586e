"""Run the dashboard core with: python -m streamflow"""

import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "streamflow.web:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "7575")),
    )


if __name__ == "__main__":
    main()
