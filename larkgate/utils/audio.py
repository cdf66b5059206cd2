"""Audio transcoding through ffmpeg."""

from __future__ import annotations

import asyncio
from pathlib import Path

from loguru import logger

from larkgate.errors import MediaError

_FORMAT_CODECS = {
    "mp3": ["-acodec", "libmp3lame", "-b:a", "64k"],
    "wav": ["-acodec", "pcm_s16le"],
    "m4a": ["-acodec", "aac", "-b:a", "64k"],
    "ogg": ["-acodec", "libopus"],
}


class FfmpegTranscoder:
    """Convert an audio file into ``target_format`` next to the input."""

    def __init__(self, ffmpeg_path: str = "ffmpeg"):
        self.ffmpeg_path = ffmpeg_path

    def build_command(self, input_path: Path, output_path: Path, target_format: str) -> list[str]:
        codec = _FORMAT_CODECS.get(target_format, [])
        return [
            self.ffmpeg_path, "-y", "-loglevel", "error",
            "-i", str(input_path),
            "-ac", "1", "-ar", "16000",
            *codec,
            str(output_path),
        ]

    async def transcode(self, input_path: Path, target_format: str) -> Path:
        output_path = input_path.with_name(f"{input_path.stem}.transcoded.{target_format}")
        cmd = self.build_command(input_path, output_path, target_format)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise MediaError(f"cannot start ffmpeg: {e}") from e

        try:
            _, stderr = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()[-500:]
            raise MediaError(f"ffmpeg exited with {process.returncode}: {detail}")
        if not output_path.exists():
            raise MediaError("ffmpeg produced no output file")

        logger.debug(f"Transcoded {input_path.name} -> {output_path.name}")
        return output_path
