from __future__ import annotations

import os
import stat
import sys
from pathlib import Path

import pytest

from larkgate.errors import MediaError
from larkgate.utils.audio import FfmpegTranscoder

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses a shell-script stand-in for ffmpeg")


def _fake_ffmpeg(tmp_path: Path, body: str) -> str:
    script = tmp_path / "fake-ffmpeg"
    script.write_text("#!/bin/sh\n" + body)
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return str(script)


def test_build_command_mono_16k_mp3() -> None:
    cmd = FfmpegTranscoder("ffmpeg").build_command(Path("in.opus"), Path("out.mp3"), "mp3")
    assert cmd[:5] == ["ffmpeg", "-y", "-loglevel", "error", "-i"]
    assert cmd[5] == "in.opus"
    assert cmd[6:10] == ["-ac", "1", "-ar", "16000"]
    assert "libmp3lame" in cmd
    assert cmd[-1] == "out.mp3"


def test_build_command_unknown_format_leaves_codec_to_ffmpeg() -> None:
    cmd = FfmpegTranscoder().build_command(Path("a"), Path("b.flac"), "flac")
    assert "-acodec" not in cmd


@posix_only
@pytest.mark.asyncio
async def test_transcode_writes_output_next_to_input(tmp_path: Path) -> None:
    # Last argument is the output path.
    ffmpeg = _fake_ffmpeg(tmp_path, 'for last; do :; done\nprintf converted > "$last"\n')
    source = tmp_path / "download.opus"
    source.write_bytes(b"OggS")

    out = await FfmpegTranscoder(ffmpeg).transcode(source, "mp3")

    assert out == tmp_path / "download.transcoded.mp3"
    assert out.read_bytes() == b"converted"


@posix_only
@pytest.mark.asyncio
async def test_transcode_nonzero_exit_is_media_error(tmp_path: Path) -> None:
    ffmpeg = _fake_ffmpeg(tmp_path, 'echo "Invalid data found" >&2\nexit 1\n')
    source = tmp_path / "download.opus"
    source.write_bytes(b"junk")

    with pytest.raises(MediaError, match="Invalid data found"):
        await FfmpegTranscoder(ffmpeg).transcode(source, "mp3")


@posix_only
@pytest.mark.asyncio
async def test_transcode_without_output_is_media_error(tmp_path: Path) -> None:
    ffmpeg = _fake_ffmpeg(tmp_path, "exit 0\n")
    source = tmp_path / "download.opus"
    source.write_bytes(b"OggS")

    with pytest.raises(MediaError, match="no output"):
        await FfmpegTranscoder(ffmpeg).transcode(source, "mp3")


@pytest.mark.asyncio
async def test_missing_binary_is_media_error(tmp_path: Path) -> None:
    missing = os.path.join(str(tmp_path), "no-such-ffmpeg")
    with pytest.raises(MediaError, match="cannot start ffmpeg"):
        await FfmpegTranscoder(missing).transcode(tmp_path / "x.opus", "mp3")
