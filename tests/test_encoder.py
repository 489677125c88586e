import pytest

from streamflow.encoder import build_command, parse_resolution, redact_command, write_concat_list
from streamflow.models import EncoderSettings, EncoderSpec


def _value(args, flag):
    return args[args.index(flag) + 1]


def test_single_video_command():
    spec = EncoderSpec(inputs=["/videos/a.mp4"], output_url="rtmp://ingest.test/live/key")

    args = build_command(spec, "/usr/bin/ffmpeg")

    assert args[0] == "/usr/bin/ffmpeg"
    assert "-stream_loop" not in args
    assert args.index("-re") < args.index("-i")
    assert _value(args, "-i") == "/videos/a.mp4"
    assert _value(args, "-b:v") == "2500k"
    assert _value(args, "-bufsize") == "5000k"
    assert _value(args, "-r") == "30"
    assert _value(args, "-g") == "60"
    assert _value(args, "-f") == "flv"
    assert args[-1] == "rtmp://ingest.test/live/key"


def test_looping_and_vertical_output():
    settings = EncoderSettings(bitrate=4000, resolution="1920x1080", fps=60, orientation="vertical", loop_video=True)
    spec = EncoderSpec(inputs=["/videos/a.mp4"], output_url="rtmp://x/live/k", settings=settings)

    args = build_command(spec)

    assert args[4:6] == ["-stream_loop", "-1"]
    assert _value(args, "-vf").startswith("scale=1080:1920:")
    assert _value(args, "-g") == "120"


def test_playlist_uses_concat_demuxer(tmp_path):
    playlist_file = str(tmp_path / "nested" / "list.txt")
    spec = EncoderSpec(inputs=["/videos/a.mp4", "/videos/it's.mp4"], output_url="rtmp://x/live/k")

    args = build_command(spec, playlist_file=playlist_file)

    assert _value(args, "-f") == "concat"
    assert _value(args, "-i") == playlist_file
    with open(playlist_file, encoding="utf-8") as handle:
        assert handle.read() == "file '/videos/a.mp4'\nfile '/videos/it'\\''s.mp4'\n"


def test_playlist_requires_list_file():
    spec = EncoderSpec(inputs=["/videos/a.mp4", "/videos/b.mp4"], output_url="rtmp://x/live/k")

    with pytest.raises(ValueError):
        build_command(spec)


def test_empty_inputs_rejected():
    with pytest.raises(ValueError):
        build_command(EncoderSpec(inputs=[], output_url="rtmp://x/live/k"))


def test_parse_resolution():
    assert parse_resolution("1280x720") == (1280, 720)
    assert parse_resolution("1280X720", "vertical") == (720, 1280)
    with pytest.raises(ValueError):
        parse_resolution("hd")


def test_redact_command_hides_stream_key():
    rendered = redact_command(["ffmpeg", "-i", "a.mp4", "rtmp://a.rtmp.youtube.com/live2/secret-key"])

    assert "secret-key" not in rendered
    assert rendered.endswith("rtmp://a.rtmp.youtube.com/live2/****")


def test_write_concat_list_returns_path(tmp_path):
    path = str(tmp_path / "list.txt")

    assert write_concat_list(["/videos/a.mp4"], path) == path
