"""Interfaces of the external services the job handlers drive.

Implementations live outside this package. ``clipqueue worker start`` builds
them through the factory named by the ``collaborators`` config key.
"""

import importlib
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol
from .models.media import (
    Highlight, RenderOptions, RenderedClip, SubtitleSegment, Transcript,
)


class MediaService(Protocol):
    def download(self, url: str, dest_dir: str) -> str:
        """Fetch the source video into dest_dir and return the local path."""

    def render_clip(self, source: str, output_path: str, options: RenderOptions) -> RenderedClip:
        """Cut, crop and encode one clip from a local path or URL."""


class TranscriptService(Protocol):
    def transcribe(self, source: str, start: Optional[float] = None, end: Optional[float] = None,
                   language: Optional[str] = None) -> Transcript:
        ...

    def find_highlights(self, transcript: Transcript, title: str) -> List[Highlight]:
        ...

    def style_subtitles(self, transcript: Transcript, style: dict) -> List[SubtitleSegment]:
        ...


class ObjectStorage(Protocol):
    def upload(self, key: str, data: bytes, content_type: str) -> str:
        """Store bytes and return an addressable URL."""


class RecordStore(Protocol):
    def create_project(self, owner: str, title: str, description: Optional[str],
                       source_video_url: str, duration: float) -> str:
        ...

    def create_clip(self, project_id: str, title: str, start_time: float, end_time: float,
                    platform: str, ai_score: float) -> str:
        ...

    def update_clip(self, clip_id: str, **fields: Any) -> None:
        ...

    def replace_subtitles(self, clip_id: str, segments: List[SubtitleSegment]) -> None:
        ...


@dataclass
class Services:
    media: MediaService
    transcripts: TranscriptService
    storage: ObjectStorage
    records: RecordStore


def load_services(target: str, settings=None) -> Services:
    """Import ``package.module:factory`` and call it with the settings."""
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Collaborators must be given as 'module:factory', got {target!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    services = factory(settings)
    if not isinstance(services, Services):
        raise TypeError(f"{target} returned {type(services).__name__}, expected Services")
    return services
