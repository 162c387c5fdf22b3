import logging
import os
import shutil
from ..models.job import Job, JobPriority, JobType
from ..models.media import ProcessVideoPayload
from .base import JobContext, JobHandler

logger = logging.getLogger(__name__)


class ProcessVideoHandler(JobHandler):
    """Download a source video, find its highlights and fan out one
    ``generate_clip`` job per highlight.

    The download is kept under the media directory rather than the scratch
    directory so the clip jobs can cut from it without fetching it again;
    the reaper removes it once this job and all of its clip jobs are finished.
    """

    job_type = JobType.PROCESS_VIDEO.value
    payload_model = ProcessVideoPayload

    def execute(self, job: Job, payload: ProcessVideoPayload, context: JobContext):
        services = context.require_services()

        context.stage(10, "Initializing video processing...")
        source_dir = os.path.join(context.media_dir, job.id)
        os.makedirs(source_dir, exist_ok=True)

        try:
            context.stage(20, "Downloading video...")
            video_path = services.media.download(payload.video_url, source_dir)

            context.stage(40, "Generating transcript...")
            transcript = services.transcripts.transcribe(payload.video_url)

            context.stage(60, "Analyzing for highlights...")
            highlights = services.transcripts.find_highlights(transcript, payload.title)
        except Exception:
            shutil.rmtree(source_dir, ignore_errors=True)
            raise

        context.stage(80, "Creating clip records...")
        project_id = services.records.create_project(
            owner=job.owner,
            title=payload.title,
            description=payload.description,
            source_video_url=payload.video_url,
            duration=transcript.duration,
        )

        clip_jobs = []
        for highlight in highlights:
            clip_jobs.append(context.enqueue(
                JobType.GENERATE_CLIP.value,
                {
                    "project_id": project_id,
                    "highlight": highlight.model_dump(),
                    "video_url": payload.video_url,
                    "source_path": video_path,
                },
                JobPriority.NORMAL,
            ))
        logger.info(f"Job {job.id}: queued {len(clip_jobs)} clip job(s) for project {project_id}")

        context.stage(100, "Video processing completed")
        return {"project_id": project_id, "clip_jobs": clip_jobs}
