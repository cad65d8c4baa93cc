"""Per-scene generation steps.

A scene is produced in causally ordered steps, one per stage kind:

1. previews: image (slides) or short clip (opening)
2. tts: narration audio, then subtitles
3. video: the scene's unit video from media + audio + subtitles

Each step is: short write (step started) -> guarded provider call(s) ->
short write (step completed or failed). A failure is recorded on the scene
and never propagates to sibling scenes.
"""

from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from scene_engine.adapters.generation.base import GenerationRequest, GenerationResult
from scene_engine.adapters.prompts.base import PromptProvider
from scene_engine.adapters.storage.base import BlobStore
from scene_engine.config import settings
from scene_engine.db.models import SceneModel
from scene_engine.domain.enums import GenerationKind, SceneType, StageKind, StepStatus
from scene_engine.domain.models import CredentialContext
from scene_engine.domain.state_machine import STAGE_SPECS
from scene_engine.errors import ProviderError, UnitFailure
from scene_engine.logging import get_logger, job_log_context
from scene_engine.services.gateway import ProviderGateway
from scene_engine.services.scene_registry import SceneRegistry
from scene_engine.utils.async_utils import run_async

logger = get_logger(__name__)

_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "video/mp4": ".mp4",
    "audio/mpeg": ".mp3",
    "audio/wav": ".wav",
    "application/x-subrip": ".srt",
}


def store_result(blobs: BlobStore, key: str, result: GenerationResult) -> str | None:
    """Persist a result's bytes or text under ``key`` and return the ref to record.

    URL-only results are recorded as-is.
    """
    if result.data is not None:
        ext = _EXTENSIONS.get(result.content_type or "", ".bin")
        return blobs.put(f"{key}{ext}", result.data, result.content_type)
    if result.text is not None:
        return blobs.put(f"{key}.srt", result.text.encode(), "application/x-subrip")
    return result.url


@dataclass
class JobContext:
    """Job-level data shared by every scene of a job."""

    job_id: UUID
    context: dict[str, Any] = field(default_factory=dict)
    credentials: CredentialContext | None = None


class SceneProcessor:
    """Runs generation steps for scenes, sequentially or with a bounded pool."""

    def __init__(
        self,
        registry: SceneRegistry,
        gateway: ProviderGateway,
        prompts: PromptProvider,
        blobs: BlobStore,
        workers: int | None = None,
    ) -> None:
        self.registry = registry
        self.gateway = gateway
        self.prompts = prompts
        self.blobs = blobs
        self.workers = workers or settings.scene_workers

    # -------------------------------------------------------------------------
    # Batch execution
    # -------------------------------------------------------------------------

    def run(
        self,
        job: JobContext,
        scene_ids: Sequence[UUID],
        kinds: Sequence[StageKind],
        skip_completed: bool = True,
    ) -> dict[UUID, bool]:
        """Process ``scene_ids`` through ``kinds``; returns success per scene.

        Scenes are submitted in the given order. With ``workers > 1`` up to
        that many scenes are in flight at once, all sharing the gateway's
        rate limiters and credential pool.
        """
        results: dict[UUID, bool] = {}
        if not scene_ids:
            return results

        logger.info(
            "scene_batch_started",
            scenes=len(scene_ids),
            kinds=[str(k) for k in kinds],
            workers=self.workers,
        )

        if self.workers <= 1 or len(scene_ids) == 1:
            for scene_id in scene_ids:
                results[scene_id] = run_async(
                    self.process_scene(job, scene_id, kinds, skip_completed)
                )
        else:
            with ThreadPoolExecutor(
                max_workers=self.workers, thread_name_prefix="scene-worker"
            ) as executor:
                futures = {
                    executor.submit(
                        run_async, self.process_scene(job, scene_id, kinds, skip_completed)
                    ): scene_id
                    for scene_id in scene_ids
                }
                for future in as_completed(futures):
                    results[futures[future]] = future.result()

        logger.info(
            "scene_batch_completed",
            succeeded=sum(results.values()),
            failed=len(results) - sum(results.values()),
        )
        return results

    async def process_scene(
        self,
        job: JobContext,
        scene_id: UUID,
        kinds: Sequence[StageKind],
        skip_completed: bool = True,
    ) -> bool:
        """Run each step in ``kinds`` for one scene, stopping at the first failure."""
        with job_log_context(job.job_id, scene_id=scene_id):
            for kind in kinds:
                spec = STAGE_SPECS[kind]
                scene = self.registry.get_scene(job.job_id, scene_id)
                if skip_completed and getattr(scene, spec.step_field) == StepStatus.COMPLETED:
                    continue

                self.registry.mark_step_started(scene_id, spec)
                try:
                    await self._run_step(kind, job, scene)
                except UnitFailure as e:
                    self.registry.mark_step_failed(scene_id, spec, e.reason, failed_at=e.step)
                    return False
                except Exception as e:
                    logger.exception("scene_step_crashed", step=str(kind))
                    self.registry.mark_step_failed(scene_id, spec, f"Unexpected error: {e}")
                    return False
                self.registry.mark_step_completed(scene_id, spec)
            return True

    async def _run_step(self, kind: StageKind, job: JobContext, scene: SceneModel) -> None:
        if kind == StageKind.PREVIEWS:
            await self._generate_media(job, scene)
        elif kind == StageKind.TTS:
            await self._generate_narration(job, scene)
        else:
            await self._generate_scene_video(job, scene)

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def _invoke(
        self,
        job: JobContext,
        scene: SceneModel,
        step: str,
        request: GenerationRequest,
        safe_prompt: str | None = None,
    ) -> GenerationResult:
        try:
            return await self.gateway.invoke(request, job.credentials, safe_prompt=safe_prompt)
        except ProviderError as e:
            raise UnitFailure(scene.id, step, str(e)) from e

    def _store(
        self, job: JobContext, scene: SceneModel, name: str, result: GenerationResult
    ) -> str | None:
        return store_result(self.blobs, f"jobs/{job.job_id}/scenes/{scene.id}/{name}", result)

    async def _generate_media(self, job: JobContext, scene: SceneModel) -> None:
        scene_type = SceneType(scene.scene_type)
        kind = GenerationKind.VIDEO_CLIP if scene_type == SceneType.OPENING else GenerationKind.IMAGE
        request = GenerationRequest(
            kind=kind,
            prompt=self.prompts.media_prompt(
                scene.prompt, scene_type, job.context, scene.user_feedback
            ),
            params={"duration_seconds": scene.duration_seconds, "scene_order": scene.scene_order},
        )
        result = await self._invoke(
            job,
            scene,
            "media",
            request,
            safe_prompt=self.prompts.safe_prompt(scene_type, job.context),
        )
        ref = self._store(job, scene, "media", result)
        if ref is None:
            raise UnitFailure(scene.id, "media", "Provider returned no media")
        self.registry.set_artifact(scene.id, "media_url", ref)

    async def _generate_narration(self, job: JobContext, scene: SceneModel) -> None:
        text = self.prompts.narration_text(scene.narration, scene.title)
        if not text:
            raise UnitFailure(scene.id, "tts", "Scene has no narration text")

        speech = await self._invoke(
            job, scene, "tts", GenerationRequest(kind=GenerationKind.SPEECH, prompt=text)
        )
        audio_ref = self._store(job, scene, "audio", speech)
        if audio_ref is None:
            raise UnitFailure(scene.id, "tts", "Provider returned no audio")
        self.registry.set_artifact(scene.id, "audio_url", audio_ref)

        duration = speech.duration_seconds or scene.duration_seconds
        if speech.duration_seconds:
            self.registry.set_duration(scene.id, speech.duration_seconds)

        subtitle = await self._invoke(
            job,
            scene,
            "subtitle",
            GenerationRequest(
                kind=GenerationKind.SUBTITLE,
                prompt=text,
                params={"duration_seconds": duration},
            ),
        )
        self.registry.set_artifact(
            scene.id, "subtitle_url", self._store(job, scene, "subtitle", subtitle)
        )

    async def _generate_scene_video(self, job: JobContext, scene: SceneModel) -> None:
        # Re-read: earlier steps of this run may have just written the refs
        scene = self.registry.get_scene(job.job_id, scene.id)
        if not scene.media_url or not scene.audio_url:
            raise UnitFailure(scene.id, "video", "Scene is missing media or audio")

        request = GenerationRequest(
            kind=GenerationKind.SCENE_VIDEO,
            prompt=scene.prompt,
            params={
                "media": self.blobs.presign(scene.media_url),
                "audio": self.blobs.presign(scene.audio_url),
                "subtitle": self.blobs.presign(scene.subtitle_url) if scene.subtitle_url else None,
                "duration_seconds": scene.duration_seconds,
            },
        )
        result = await self._invoke(job, scene, "video", request)
        ref = self._store(job, scene, "scene_video", result)
        if ref is None:
            raise UnitFailure(scene.id, "video", "Provider returned no video")
        self.registry.set_artifact(scene.id, "scene_video_url", ref)
