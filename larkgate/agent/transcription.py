"""Voice attachment -> text: fetch, download, transcode, transcribe, clean up."""

from __future__ import annotations

import asyncio
import re
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Protocol

from loguru import logger

from larkgate.channels.feishu import FileRef
from larkgate.errors import AuthError, BackendError, MediaError
from larkgate.utils.retry import Deadline, RetryPolicy, call_with_policy

CredentialProvider = Callable[[], Awaitable[str]]
FileFetcher = Callable[[FileRef, str], AsyncIterator[bytes]]
Transcriber = Callable[[Path, str], Awaitable[str]]


class Transcoder(Protocol):
    async def transcode(self, input_path: Path, target_format: str) -> Path: ...


class PipelineStage(str, Enum):
    PENDING = "pending"
    FETCHED = "fetched"
    DOWNLOADED = "downloaded"
    TRANSCODED = "transcoded"
    TRANSCRIBED = "transcribed"
    CLEANED = "cleaned"


@dataclass
class TranscriptionResult:
    ok: bool
    text: str = ""
    stage: PipelineStage = PipelineStage.PENDING  # last stage reached before cleanup
    failed_step: str = ""
    error: str = ""
    cleaned: bool = False


@dataclass
class _Run:
    stage: PipelineStage = PipelineStage.PENDING
    step: str = "fetch"

    def advance(self, stage: PipelineStage, next_step: str) -> None:
        self.stage = stage
        self.step = next_step


_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class TranscriptionPipeline:
    """Strictly sequential audio-to-text pipeline with guaranteed temp cleanup.

    Each invocation works in its own temporary directory, removed on every
    exit path. Any failing step aborts the run; nothing is retried here beyond
    what the per-step retry policies allow at the collaborator boundary.
    """

    def __init__(
        self,
        credential_provider: CredentialProvider,
        fetch_file: FileFetcher,
        transcoder: Transcoder,
        transcriber: Transcriber,
        target_format: str = "mp3",
        source_format: str = "opus",
        skip_transcode: bool = False,
        temp_dir: str | Path | None = None,
        policies: dict[str, RetryPolicy] | None = None,
    ):
        self.credential_provider = credential_provider
        self.fetch_file = fetch_file
        self.transcoder = transcoder
        self.transcriber = transcriber
        self.target_format = target_format
        self.source_format = source_format
        self.skip_transcode = skip_transcode
        self.temp_dir = str(temp_dir) if temp_dir else None
        self.policies = policies or {}

    def _policy(self, name: str) -> RetryPolicy:
        return self.policies.get(name, RetryPolicy())

    async def run(self, ref: FileRef, event_id: str, deadline: Deadline | None = None) -> TranscriptionResult:
        run = _Run()
        prefix = f"larkgate-{_UNSAFE_NAME_CHARS.sub('_', event_id)[:48]}-"
        result: TranscriptionResult
        try:
            with tempfile.TemporaryDirectory(prefix=prefix, dir=self.temp_dir) as tmp:
                try:
                    text = await self._run_steps(run, ref, Path(tmp), deadline)
                    result = TranscriptionResult(ok=True, text=text, stage=run.stage)
                except Exception as e:
                    logger.warning(f"Transcription of {ref.file_key} failed at {run.step}: {e}")
                    result = TranscriptionResult(
                        ok=False,
                        stage=run.stage,
                        failed_step=run.step,
                        error=str(e),
                    )
        except OSError as e:
            # Temp dir could not be created or removed.
            logger.error(f"Transcription temp dir error for {ref.file_key}: {e}")
            return TranscriptionResult(ok=False, stage=run.stage, failed_step=run.step, error=str(e))

        result.cleaned = True
        logger.debug(f"Transcription {ref.file_key}: {run.stage.value} -> {PipelineStage.CLEANED.value}")
        return result

    async def _run_steps(self, run: _Run, ref: FileRef, workdir: Path, deadline: Deadline | None) -> str:
        token = await call_with_policy(
            "credential", self.credential_provider, self._policy("credential"), deadline, AuthError,
        )

        download_format = self.target_format if self.skip_transcode else self.source_format
        download_path = workdir / f"download.{download_format}"
        await call_with_policy(
            "file fetch",
            lambda: self._download(run, ref, token, download_path),
            self._policy("file_fetch"),
            deadline,
            MediaError,
        )
        run.advance(PipelineStage.DOWNLOADED, "transcode")

        if self.skip_transcode:
            audio_path = download_path
        else:
            audio_path = await call_with_policy(
                "transcode",
                lambda: self.transcoder.transcode(download_path, self.target_format),
                self._policy("transcode"),
                deadline,
                MediaError,
            )
        run.advance(PipelineStage.TRANSCODED, "transcribe")

        text = await call_with_policy(
            "transcription",
            lambda: self.transcriber(audio_path, self.target_format),
            self._policy("transcription"),
            deadline,
            BackendError,
        )
        if not text.strip():
            raise BackendError("transcription returned empty text")
        run.advance(PipelineStage.TRANSCRIBED, "cleanup")
        return text.strip()

    async def _download(self, run: _Run, ref: FileRef, token: str, dest: Path) -> None:
        # A retried attempt starts over from an empty file.
        run.advance(PipelineStage.PENDING, "fetch")
        stream = self.fetch_file(ref, token)
        with open(dest, "wb") as f:
            async for chunk in stream:
                if run.stage == PipelineStage.PENDING:
                    run.advance(PipelineStage.FETCHED, "download")
                await asyncio.to_thread(f.write, chunk)
        if run.stage == PipelineStage.PENDING:
            run.advance(PipelineStage.FETCHED, "download")
        if dest.stat().st_size == 0:
            raise MediaError(f"empty audio file for {ref.file_key}")
