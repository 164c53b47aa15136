"""End-to-end video dubbing pipeline orchestration.

This module runs one claimed job through extract → transcribe → translate →
speech → mix → upload → (lip-sync), with content-hash caching of the
expensive stages, progress tracking, and database updates at each stage.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from scriptshift.api.progress import send_progress_update
from scriptshift.config import Settings, get_settings
from scriptshift.database import SessionLocal
from scriptshift.errors import NotFoundError, ProviderError, StageError
from scriptshift.models import (
    SOURCE_LANGUAGE,
    Artifact,
    ArtifactType,
    Job,
    JobStatus,
    Segment,
    Transcript,
    VoiceMapping,
    utcnow,
)
from scriptshift.providers import ProviderBundle
from scriptshift.providers.base import LipSyncStatus
from scriptshift.schemas import ProgressUpdate
from scriptshift.services.content_cache import ContentCache, ExpiringCache, make_cache_key
from scriptshift.services.job_queue import ClaimedWork, JobQueue
from scriptshift.services.media import MediaProcessor
from scriptshift.services.polling import poll_until

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressSink = Callable[[ProgressUpdate], Awaitable[None]]


@dataclass(slots=True)
class PipelineResult:
    """URLs produced by a successful run."""

    job_id: str
    final_video_url: str
    dubbed_audio_url: str
    lipsynced_video_url: str | None = None
    segment_count: int = 0

    @property
    def ready_video_url(self) -> str:
        return self.lipsynced_video_url or self.final_video_url


@dataclass(slots=True)
class _RunState:
    """Intermediate values handed from one stage to the next."""

    work: ClaimedWork
    workdir: Path
    video_path: Path | None = None
    audio_path: Path | None = None
    source_language: str = SOURCE_LANGUAGE
    segments: list[Segment] = field(default_factory=list)
    translated: list[Segment] = field(default_factory=list)
    dubbed_audio_path: Path | None = None
    dubbed_audio_url: str | None = None
    final_video_path: Path | None = None
    final_video_url: str | None = None
    lipsynced_video_url: str | None = None


class ProgressReporter:
    """
    Publishes one run's progress to the job row, the queue and SSE clients.

    Progress is clamped to the highest value reported so far, so observers
    never see it go backwards within a run.
    """

    def __init__(
        self,
        job_id: str,
        *,
        session_factory: Callable[[], Session],
        queue: JobQueue,
        sink: ProgressSink | None = None,
    ) -> None:
        self.job_id = job_id
        self.stage = "initializing"
        self.progress = 0
        self._session_factory = session_factory
        self._queue = queue
        self._sink = sink

    async def start(self) -> None:
        """Move the job to `processing` at 0% and clear any earlier attempt's error."""
        with self._session_factory() as session:
            job = session.get(Job, self.job_id)
            if job is None:
                raise NotFoundError(f"Job {self.job_id} not found")
            job.status = JobStatus.PROCESSING
            job.progress = 0
            job.current_stage = "initializing"
            job.error = None
            job.completed_at = None
            session.commit()

        self.stage, self.progress = "initializing", 0
        self._queue.report_progress(self.job_id, self.stage, 0, "Initializing")
        await self._emit(JobStatus.PROCESSING, "Initializing")

    async def update(self, stage: str, progress: float, message: str | None = None) -> None:
        """Record a stage checkpoint."""
        self.stage = stage
        self.progress = min(100, max(self.progress, int(progress)))

        with self._session_factory() as session:
            session.execute(
                update(Job)
                .where(Job.id == self.job_id)
                .values(
                    status=JobStatus.PROCESSING,
                    progress=self.progress,
                    current_stage=stage,
                    updated_at=utcnow(),
                )
            )
            session.commit()

        self._queue.report_progress(self.job_id, stage, self.progress, message)
        await self._emit(JobStatus.PROCESSING, message)

    async def complete(self, message: str) -> None:
        now = utcnow()
        self.stage, self.progress = "complete", 100

        with self._session_factory() as session:
            session.execute(
                update(Job)
                .where(Job.id == self.job_id)
                .values(
                    status=JobStatus.COMPLETED,
                    progress=100,
                    current_stage="complete",
                    error=None,
                    completed_at=now,
                    updated_at=now,
                )
            )
            session.commit()

        self._queue.complete(self.job_id, message, now=now)
        await self._emit(JobStatus.COMPLETED, message)

    async def fail(self, error: str) -> None:
        """Mark the job failed with a human-readable error. `completed_at` stays unset."""
        with self._session_factory() as session:
            session.execute(
                update(Job)
                .where(Job.id == self.job_id)
                .values(
                    status=JobStatus.FAILED,
                    error=error,
                    completed_at=None,
                    updated_at=utcnow(),
                )
            )
            session.commit()

        self._queue.report_progress(self.job_id, self.stage, self.progress, error)
        await self._emit(JobStatus.FAILED, error)

    async def _emit(self, status: JobStatus, message: str | None) -> None:
        if self._sink is None:
            return
        try:
            await self._sink(
                ProgressUpdate(
                    job_id=self.job_id,
                    status=status,
                    progress=self.progress,
                    stage=self.stage,
                    message=message,
                )
            )
        except Exception as e:
            # Live updates are best effort; the job row stays authoritative
            logger.error(f"Progress update failed (job {self.job_id}, stage {self.stage}): {e}")


class DubbingPipeline:
    """Runs claimed jobs through every pipeline stage."""

    def __init__(
        self,
        providers: ProviderBundle,
        *,
        media: MediaProcessor | None = None,
        queue: JobQueue | None = None,
        session_factory: Callable[[], Session] | None = None,
        settings: Settings | None = None,
        progress_sink: ProgressSink | None = send_progress_update,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.providers = providers
        self.media = media or MediaProcessor(self.settings)
        self._session_factory = session_factory or SessionLocal
        self.queue = queue or JobQueue(session_factory=self._session_factory, settings=self.settings)
        self._progress_sink = progress_sink
        self._sleep = sleep

    async def run(self, work: ClaimedWork) -> PipelineResult:
        """
        Process one claimed job from start to finish.

        Stage progress checkpoints:
            1. initializing (0%)
            2. extract_audio (5-10%)
            3. transcribe (10-40%)
            4. translate (40-60%)
            5. generate_speech (60-85%)
            6. mix_audio (85-90%)
            7. upload (90-95%)
            8. lipsync (95-99%, optional)
            9. complete (100%)

        Raises:
            StageError: The failing stage and its cause. The job row is already
                marked failed; retrying is left to the dispatcher.
        """
        reporter = ProgressReporter(
            work.job_id,
            session_factory=self._session_factory,
            queue=self.queue,
            sink=self._progress_sink,
        )

        self.settings.temp_dir.mkdir(parents=True, exist_ok=True)
        workdir = Path(
            tempfile.mkdtemp(
                prefix=f"{work.file_hash[:12]}-{work.job_id}-", dir=self.settings.temp_dir
            )
        )
        state = _RunState(work=work, workdir=workdir)

        logger.info(
            f"[Job {work.job_id}] Starting pipeline "
            f"(attempt {work.attempt}/{work.max_attempts}, target={work.target_language}, "
            f"lipsync={work.enable_lipsync})"
        )

        try:
            await self._run_stage("initializing", reporter.start())
            await self._run_stage("extract_audio", self._extract_audio(state, reporter))
            await self._run_stage("transcribe", self._transcribe(state, reporter))
            await self._run_stage("translate", self._translate(state, reporter))
            await self._run_stage("generate_speech", self._generate_speech(state, reporter))
            await self._run_stage("mix_audio", self._mix_audio(state, reporter))
            await self._run_stage("upload", self._upload(state, reporter))
            if work.enable_lipsync:
                await self._run_stage("lipsync", self._lipsync(state, reporter))

            await reporter.complete("Dubbing completed successfully")
        except StageError as e:
            logger.error(f"[Job {work.job_id}] {e}")
            try:
                await reporter.fail(str(e))
            except Exception as e2:
                logger.error(f"Failed to update job status after error: {e2}")
            raise
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

        logger.info(f"[Job {work.job_id}] Pipeline processing completed successfully")
        assert state.final_video_url is not None and state.dubbed_audio_url is not None
        return PipelineResult(
            job_id=work.job_id,
            final_video_url=state.final_video_url,
            dubbed_audio_url=state.dubbed_audio_url,
            lipsynced_video_url=state.lipsynced_video_url,
            segment_count=len(state.translated),
        )

    @staticmethod
    async def _run_stage(stage: str, step: Awaitable[T]) -> T:
        try:
            return await step
        except StageError:
            raise
        except Exception as e:
            raise StageError(stage, e) from e

    # ============================================================
    # STAGES
    # ============================================================

    async def _extract_audio(self, state: _RunState, reporter: ProgressReporter) -> None:
        work = state.work
        await reporter.update("extract_audio", 5, "Extracting audio")
        audio_path = state.workdir / "audio.mp3"

        with self._session_factory() as session:
            cached = ContentCache(session).lookup_artifact(
                work.file_hash, ArtifactType.EXTRACTED_AUDIO
            )
            cached_url = cached.url if cached is not None else None

        data: bytes | None = None
        if cached_url is not None:
            try:
                data = await self.providers.storage.fetch(cached_url)
                logger.info(f"[Job {work.job_id}] Using cached audio for {work.file_hash}")
            except NotFoundError:
                logger.warning(
                    f"[Job {work.job_id}] Cached audio {cached_url} is missing from storage; "
                    "extracting again"
                )

        if data is not None:
            await asyncio.to_thread(audio_path.write_bytes, data)
        else:
            video_path = await self._download_source(state)
            await self.media.extract_audio(video_path, audio_path)
            data = await asyncio.to_thread(audio_path.read_bytes)
            url = await self.providers.storage.put(data, f"{work.file_hash}-audio.mp3")
            self._record_artifact(work.job_id, work.file_hash, ArtifactType.EXTRACTED_AUDIO, url)

        state.audio_path = audio_path
        await reporter.update("extract_audio", 10, "Audio extracted")

    async def _transcribe(self, state: _RunState, reporter: ProgressReporter) -> None:
        work = state.work
        await reporter.update("transcribe", 10, "Transcribing audio")

        with self._session_factory() as session:
            cached = ContentCache(session).lookup_transcript(work.file_hash, SOURCE_LANGUAGE)
            if cached is not None:
                state.segments = list(cached.segments)
                state.source_language = cached.source_language or SOURCE_LANGUAGE

        if state.segments:
            logger.info(
                f"[Job {work.job_id}] Using cached transcript ({len(state.segments)} segments)"
            )
        else:
            await reporter.update("transcribe", 15, "Transcribing with speaker diarization")
            assert state.audio_path is not None
            result = await self.providers.transcription.transcribe(state.audio_path)

            segments = sorted(result.segments, key=lambda s: (s.start, s.end))
            if not segments:
                raise ProviderError("Transcription returned no speech", provider="transcription")

            state.segments = segments
            state.source_language = result.language or SOURCE_LANGUAGE
            self._save_transcript(
                work, SOURCE_LANGUAGE, state.segments, source_language=state.source_language
            )
            logger.info(
                f"[Job {work.job_id}] Transcription complete: {len(segments)} segments, "
                f"language={state.source_language}"
            )

        await reporter.update("transcribe", 40, f"Transcribed {len(state.segments)} segments")

    async def _translate(self, state: _RunState, reporter: ProgressReporter) -> None:
        work = state.work
        target = work.target_language
        await reporter.update("translate", 40, f"Translating to {target}")

        with self._session_factory() as session:
            cached = ContentCache(session).lookup_transcript(work.file_hash, target)
            if cached is not None:
                state.translated = list(cached.segments)

        if state.translated:
            logger.info(f"[Job {work.job_id}] Using cached {target} translation")
            await reporter.update("translate", 60, "Translation loaded from cache")
            return

        total = len(state.segments)
        semaphore = asyncio.Semaphore(max(1, self.settings.translation_concurrency))
        model = self.providers.translation.get_model_info().get("name", "")
        done = 0

        async def translate_segment(segment: Segment) -> Segment:
            nonlocal done
            key = make_cache_key(
                "translation",
                text=segment.text,
                source=state.source_language,
                target=target,
                model=model,
            )
            cached_text = self._memo_get(key) if segment.text.strip() else segment.text
            if cached_text is not None:
                text = cached_text
            else:
                async with semaphore:
                    text = await self.providers.translation.translate(
                        segment.text, state.source_language, target
                    )
                self._memo_set(key, text)
            done += 1
            await reporter.update(
                "translate", 40 + 20 * done / total, f"Translated {done}/{total} segments"
            )
            return segment.with_text(text)

        tasks = [asyncio.create_task(translate_segment(s)) for s in state.segments]
        try:
            translated = await asyncio.gather(*tasks)
        except BaseException:
            # One failed segment fails the stage; stop the rest
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        if len(translated) != total:
            raise ProviderError(
                f"Translation returned {len(translated)} segments for {total}",
                provider="translation",
            )

        state.translated = list(translated)
        self._save_transcript(
            work, target, state.translated, source_language=state.source_language
        )
        await reporter.update("translate", 60, "Translation complete")

    async def _generate_speech(self, state: _RunState, reporter: ProgressReporter) -> None:
        work = state.work
        await reporter.update("generate_speech", 60, "Generating speech")

        with self._session_factory() as session:
            mappings = session.scalars(
                select(VoiceMapping).where(VoiceMapping.job_id == work.job_id)
            ).all()
            voices = {m.speaker_id: m.voice_id for m in mappings}

        spoken = [s for s in state.translated if s.text.strip()]
        if not spoken:
            raise ProviderError("No translated speech to synthesize", provider="speech")

        clips: list[bytes] = []
        voices_used: dict[str, str] = {}
        for index, segment in enumerate(spoken, start=1):
            voice_id = voices.get(segment.speaker, self.settings.default_voice_id)
            voices_used[segment.speaker] = voice_id
            clips.append(await self.providers.speech.synthesize(segment.text, voice_id))
            await reporter.update(
                "generate_speech",
                60 + 25 * index / len(spoken),
                f"Generated speech {index}/{len(spoken)}",
            )

        dubbed_path = state.workdir / "dubbed.mp3"
        await self.media.render_track(spoken, clips, dubbed_path)

        data = await asyncio.to_thread(dubbed_path.read_bytes)
        url = await self.providers.storage.put(data, f"{work.job_id}-dubbed-audio.mp3")
        # Depends on this job's voice choices, so it is not content-addressed
        self._record_artifact(
            work.job_id,
            None,
            ArtifactType.DUBBED_AUDIO,
            url,
            {"target_language": work.target_language, "voices": voices_used},
        )

        state.dubbed_audio_path = dubbed_path
        state.dubbed_audio_url = url
        await reporter.update("generate_speech", 85, "Dubbed audio ready")

    async def _mix_audio(self, state: _RunState, reporter: ProgressReporter) -> None:
        await reporter.update("mix_audio", 85, "Mixing dubbed audio into video")
        assert state.dubbed_audio_path is not None

        video_path = state.video_path or await self._download_source(state)
        output_path = state.workdir / "final.mp4"
        await self.media.mux_video(video_path, state.dubbed_audio_path, output_path)

        state.final_video_path = output_path
        await reporter.update("mix_audio", 90, "Video mixed")

    async def _upload(self, state: _RunState, reporter: ProgressReporter) -> None:
        work = state.work
        await reporter.update("upload", 90, "Uploading final video")
        assert state.final_video_path is not None

        data = await asyncio.to_thread(state.final_video_path.read_bytes)
        url = await self.providers.storage.put(
            data, f"{work.file_hash}-dubbed-{work.target_language}.mp4"
        )
        self._record_artifact(
            work.job_id,
            work.file_hash,
            ArtifactType.FINAL_VIDEO,
            url,
            {"target_language": work.target_language},
        )

        state.final_video_url = url
        await reporter.update("upload", 95, "Final video uploaded")

    async def _lipsync(self, state: _RunState, reporter: ProgressReporter) -> None:
        work = state.work
        await reporter.update("lipsync", 95, "Processing lip-sync")

        lipsync = self.providers.lipsync
        if lipsync is None:
            raise ProviderError(
                "Lip-sync requested but no provider is configured", provider="lipsync"
            )
        assert state.final_video_url is not None and state.dubbed_audio_url is not None

        handle = await lipsync.submit(state.final_video_url, state.dubbed_audio_url)
        logger.info(f"[Job {work.job_id}] Lip-sync submitted as {handle}")

        def failure(status: LipSyncStatus) -> str | None:
            if status.is_failed:
                return status.error or "provider reported failure"
            return None

        status = await poll_until(
            lambda: lipsync.status(handle),
            is_done=lambda s: s.is_completed,
            is_failed=failure,
            interval_seconds=self.settings.provider_poll_interval_seconds,
            max_wait_seconds=self.settings.lipsync_max_wait_seconds,
            description=f"Lip-sync {handle}",
            provider="lipsync",
            sleep=self._sleep,
        )
        if not status.output_url:
            raise ProviderError("Lip-sync completed without an output URL", provider="lipsync")

        data = await self.providers.storage.fetch(status.output_url)
        url = await self.providers.storage.put(
            data, f"{work.file_hash}-lipsynced-{work.target_language}.mp4"
        )
        self._record_artifact(
            work.job_id,
            work.file_hash,
            ArtifactType.LIPSYNCED_VIDEO,
            url,
            {"target_language": work.target_language, "provider_handle": handle},
        )

        state.lipsynced_video_url = url
        await reporter.update("lipsync", 99, "Lip-sync complete")

    # ============================================================
    # HELPERS
    # ============================================================

    async def _download_source(self, state: _RunState) -> Path:
        """Fetch the uploaded video into the run's working directory (once per run)."""
        if state.video_path is not None:
            return state.video_path

        work = state.work
        suffix = Path(work.original_filename).suffix.lower() or ".mp4"
        video_path = state.workdir / f"source{suffix}"
        data = await self.providers.storage.fetch(work.file_url)
        await asyncio.to_thread(video_path.write_bytes, data)

        state.video_path = video_path
        return video_path

    def _memo_get(self, key: str) -> str | None:
        with self._session_factory() as session:
            value = ExpiringCache(session).get(key)
        return value if isinstance(value, str) else None

    def _memo_set(self, key: str, value: str) -> None:
        with self._session_factory() as session:
            ExpiringCache(session, self.settings.cache_default_ttl_seconds).set(key, value)

    def _save_transcript(
        self,
        work: ClaimedWork,
        language: str,
        segments: list[Segment],
        *,
        source_language: str | None,
    ) -> None:
        with self._session_factory() as session:
            session.add(
                Transcript(
                    job_id=work.job_id,
                    file_hash=work.file_hash,
                    language=language,
                    source_language=source_language,
                    speakers=list(dict.fromkeys(s.speaker for s in segments)),
                    segments=segments,
                )
            )
            session.commit()

    def _record_artifact(
        self,
        job_id: str,
        file_hash: str | None,
        artifact_type: ArtifactType,
        url: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        with self._session_factory() as session:
            session.add(
                Artifact(
                    job_id=job_id,
                    file_hash=file_hash,
                    artifact_type=artifact_type.value,
                    url=url,
                    metadata_=metadata,
                )
            )
            session.commit()
        logger.info(f"[Job {job_id}] Recorded {artifact_type.value} artifact: {url}")


__all__ = ["DubbingPipeline", "PipelineResult", "ProgressReporter", "ProgressSink"]
