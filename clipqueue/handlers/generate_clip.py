import logging
import math
import os
from ..models.job import Job, JobType, utcnow
from ..models.media import GenerateClipPayload, RenderOptions
from .base import JobContext, JobHandler

logger = logging.getLogger(__name__)


class GenerateClipHandler(JobHandler):
    job_type = JobType.GENERATE_CLIP.value
    payload_model = GenerateClipPayload

    def execute(self, job: Job, payload: GenerateClipPayload, context: JobContext):
        services = context.require_services()
        highlight = payload.highlight

        context.stage(10, "Setting up clip generation...")
        with context.working_directory() as workdir:
            context.stage(30, "Creating clip record...")
            clip_id = services.records.create_clip(
                project_id=payload.project_id,
                title=highlight.suggested_title,
                start_time=math.floor(highlight.start_time),
                end_time=math.floor(highlight.end_time),
                platform=highlight.platform,
                ai_score=highlight.ai_score,
            )

            try:
                options = RenderOptions(
                    start_time=highlight.start_time,
                    end_time=highlight.end_time,
                    platform=highlight.platform,
                    quality=payload.quality,
                    crop_to_vertical=payload.crop_to_vertical,
                    enhance_audio=payload.enhance_audio,
                )
                # Prefer the copy the parent job already downloaded
                source = payload.video_url
                if payload.source_path and os.path.exists(payload.source_path):
                    source = payload.source_path

                context.stage(60, "Rendering clip...")
                rendered = services.media.render_clip(
                    source, os.path.join(workdir, f"clip_{clip_id}.mp4"), options
                )

                context.stage(80, "Uploading to storage...")
                video_url = services.storage.upload(
                    f"clips/{clip_id}/{highlight.platform}.mp4", rendered.video_data, "video/mp4"
                )
                thumbnail_url = services.storage.upload(
                    f"thumbnails/{clip_id}.jpg", rendered.thumbnail_data, "image/jpeg"
                )
            except Exception as exc:
                self._mark_clip_failed(services, clip_id, exc)
                raise

            services.records.update_clip(
                clip_id,
                status="completed",
                processed_at=utcnow().isoformat(),
                video_url=video_url,
                thumbnail_url=thumbnail_url,
                file_size=rendered.metadata.get("file_size", len(rendered.video_data)),
                resolution=rendered.metadata.get("resolution"),
            )

        context.stage(100, "Clip generation completed")
        return {"clip_id": clip_id, "video_url": video_url, "thumbnail_url": thumbnail_url}

    @staticmethod
    def _mark_clip_failed(services, clip_id: str, error: Exception):
        try:
            services.records.update_clip(clip_id, status="failed", error_message=str(error))
        except Exception:
            logger.exception(f"Could not mark clip {clip_id} as failed")
