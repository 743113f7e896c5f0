"""Project level frame library operations."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from ..config import AppConfig
from ..processing.frames import (
    FrameExtractor,
    apply_frame_selection,
    extract_timestamps_from_slides,
    frame_statistics,
    load_valid_frames,
    merge_frames,
    missing_timestamps,
    remove_frames,
    storage_path_from_url,
    update_slides_with_frames,
    used_image_urls,
)
from .events import emit_file_event
from .slides import ProjectNotFoundError
from .storage import ProjectRecord, ProjectRepository


LOGGER = logging.getLogger(__name__)


class FrameLibraryService:
    """Keep ``extracted_frames`` and slide images of a project in sync."""

    def __init__(
        self,
        repository: ProjectRepository,
        config: AppConfig,
        *,
        extractor: Optional[FrameExtractor] = None,
    ) -> None:
        self._repository = repository
        self._config = config
        self._extractor = extractor or FrameExtractor(config.storage_root)

    def _require_project(self, project_id: int) -> ProjectRecord:
        project = self._repository.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(f"Project {project_id} not found")
        return project

    def list_frames(self, project_id: int) -> List[Dict[str, Any]]:
        return load_valid_frames(self._require_project(project_id).extracted_frames)

    def statistics(self, project_id: int) -> Dict[str, Any]:
        project = self._require_project(project_id)
        return frame_statistics(load_valid_frames(project.extracted_frames), project.slides)

    def merge_and_save(self, project_id: int, new_frames: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        project = self._require_project(project_id)
        merged = merge_frames(project.extracted_frames, new_frames)
        self._repository.update_frames(project_id, merged)
        return merged

    def extract_for_slides(
        self,
        project_id: int,
        timestamps: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        """Capture frames for slide timestamps that have none yet.

        Returns the new frames, the merged library and the updated slides.
        """

        project = self._require_project(project_id)
        requested = list(timestamps) if timestamps else extract_timestamps_from_slides(project.slides)
        todo = missing_timestamps(requested, project.extracted_frames)
        new_frames: List[Dict[str, Any]] = []
        if todo:
            if not project.source_file_path:
                raise ValueError("Project has no video to extract frames from")
            video = self._config.storage_root / project.source_file_path
            output_dir = self._config.projects_root / str(project_id) / "slide_stills"
            new_frames = self._extractor.extract(video, todo, output_dir)
        else:
            LOGGER.debug("All %d timestamp(s) of project %s already extracted", len(requested), project_id)

        merged = merge_frames(project.extracted_frames, new_frames)
        slides, matched = update_slides_with_frames(project.slides, merged)
        self._repository.update_project(project_id, extracted_frames=merged, slides=slides)
        return {"newFrames": new_frames, "frames": merged, "slides": slides, "matchedSlides": matched}

    def apply_to_slides(self, project_id: int) -> Dict[str, Any]:
        project = self._require_project(project_id)
        slides, matched = update_slides_with_frames(
            project.slides, load_valid_frames(project.extracted_frames)
        )
        if matched:
            self._repository.update_slides(project_id, slides)
        return {"slides": slides, "matchedSlides": matched}

    def select_for_slide(
        self,
        project_id: int,
        slide_index: int,
        frames: Sequence[Dict[str, Any]],
    ) -> Dict[str, Any]:
        """Use *frames* as the images of one slide and add them to the library."""

        project = self._require_project(project_id)
        slides = apply_frame_selection(project.slides, slide_index, frames)
        merged = merge_frames(project.extracted_frames, frames)
        self._repository.update_project(project_id, slides=slides, extracted_frames=merged)
        return {"slides": slides, "frames": merged}

    def delete_frames(self, project_id: int, frame_ids: Sequence[str]) -> List[Dict[str, Any]]:
        project = self._require_project(project_id)
        targets = {str(identifier) for identifier in frame_ids}
        doomed = [frame for frame in project.extracted_frames if str(frame.get("id")) in targets]
        remaining = remove_frames(project.extracted_frames, frame_ids)
        self._repository.update_frames(project_id, remaining)
        # Slides may still show a frame that left the library.
        in_use = used_image_urls(project.slides)
        for frame in doomed:
            if frame.get("imageUrl") in in_use:
                LOGGER.debug("Keeping %s, a slide still references it", frame.get("imageUrl"))
                continue
            self._delete_file(frame.get("imageUrl"))
        return remaining

    def purge_unused(self, project_id: int) -> Dict[str, Any]:
        """Delete frames no slide references, files included."""

        project = self._require_project(project_id)
        stats = frame_statistics(project.extracted_frames, project.slides)
        unused_ids = {id(frame) for frame in stats["unusedFrames"]}
        kept = [frame for frame in project.extracted_frames if id(frame) not in unused_ids]
        self._repository.update_frames(project_id, kept)
        for frame in stats["unusedFrames"]:
            self._delete_file(frame.get("imageUrl"))
        return {"removed": len(stats["unusedFrames"]), "frames": kept}

    def _delete_file(self, url: Optional[str]) -> None:
        relative = storage_path_from_url(url)
        if not relative:
            return
        path = (self._config.storage_root / relative).resolve()
        try:
            path.relative_to(self._config.storage_root.resolve())
        except ValueError:
            LOGGER.warning("Refusing to delete frame outside storage: %s", url)
            return
        if path.is_file():
            path.unlink()
            emit_file_event("frame_removed", payload={"path": relative})


__all__ = ["FrameLibraryService"]
