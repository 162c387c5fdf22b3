from ..models.job import Job, JobType
from ..models.media import GenerateSubtitlesPayload
from .base import JobContext, JobHandler


class GenerateSubtitlesHandler(JobHandler):
    job_type = JobType.GENERATE_SUBTITLES.value
    payload_model = GenerateSubtitlesPayload

    def execute(self, job: Job, payload: GenerateSubtitlesPayload, context: JobContext):
        services = context.require_services()

        context.stage(20, "Generating transcript...")
        transcript = services.transcripts.transcribe(
            payload.video_url, payload.start_time, payload.end_time, payload.language
        )

        context.stage(60, "Processing subtitles...")
        segments = services.transcripts.style_subtitles(transcript, payload.style)

        context.stage(80, "Storing subtitles...")
        services.records.replace_subtitles(payload.clip_id, segments)

        context.stage(100, "Subtitles generated successfully")
        return {"clip_id": payload.clip_id, "segments": len(segments)}
