from typing import Dict, Iterable, List
from ..errors import HandlerNotFoundError
from .base import JobHandler


class HandlerRegistry:
    """Maps a job type to the handler that executes it."""

    def __init__(self, handlers: Iterable[JobHandler] = ()):
        self._handlers: Dict[str, JobHandler] = {}
        for handler in handlers:
            self.register(handler)

    @classmethod
    def default(cls) -> "HandlerRegistry":
        from .generate_clip import GenerateClipHandler
        from .generate_subtitles import GenerateSubtitlesHandler
        from .process_video import ProcessVideoHandler

        return cls([ProcessVideoHandler(), GenerateClipHandler(), GenerateSubtitlesHandler()])

    def register(self, handler: JobHandler):
        if handler.job_type in self._handlers:
            raise ValueError(f"A handler for {handler.job_type!r} is already registered")
        self._handlers[handler.job_type] = handler

    def resolve(self, job_type: str) -> JobHandler:
        handler = self._handlers.get(job_type)
        if handler is None:
            raise HandlerNotFoundError(job_type)
        return handler

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers

    @property
    def job_types(self) -> List[str]:
        return sorted(self._handlers)
