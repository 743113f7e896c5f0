"""Slide generation and editing on top of stored projects."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..processing.slides import (
    LARGE_TRANSCRIPT_CHARS,
    GenerationResult,
    SlideGenerationError,
    SlideGenerator,
    add_image_to_slide,
    add_slide,
    calculate_target_slides,
    delete_slide,
    remove_image_from_slide,
    slides_or_placeholder,
    update_slide,
)
from .events import emit_task_event
from .storage import ProjectRecord, ProjectRepository


LOGGER = logging.getLogger(__name__)


class ProjectNotFoundError(LookupError):
    """Raised when an operation targets a project id that does not exist."""


@dataclass
class SlideGenerationOutcome:
    project_id: int
    slides: List[Dict[str, Any]]
    target_slides: int
    usage: GenerationResult
    warnings: List[str]


class SlideService:
    """Generate, persist and edit the slide deck of a project."""

    def __init__(self, repository: ProjectRepository, generator: SlideGenerator) -> None:
        self._repository = repository
        self._generator = generator

    def _require_project(self, project_id: int) -> ProjectRecord:
        project = self._repository.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(f"Project {project_id} not found")
        return project

    def load_slides(self, project_id: int) -> List[Dict[str, Any]]:
        """Stored slides, or the placeholder slide when none were generated yet."""

        return slides_or_placeholder(self._require_project(project_id).slides)

    def generate_for_project(
        self,
        project_id: int,
        *,
        context_prompt: Optional[str] = None,
        slides_per_minute: Optional[float] = None,
        title: Optional[str] = None,
    ) -> SlideGenerationOutcome:
        project = self._require_project(project_id)
        if not project.transcript:
            raise SlideGenerationError(
                "No transcript available. Please transcribe the video first."
            )

        warnings: List[str] = []
        if len(project.transcript) > LARGE_TRANSCRIPT_CHARS:
            message = (
                f"Transcript is very long ({len(project.transcript)} characters); "
                "slide generation may be truncated."
            )
            LOGGER.warning("Project %s: %s", project_id, message)
            warnings.append(message)

        spm = slides_per_minute or project.slides_per_minute
        target = calculate_target_slides(project.duration, spm, project.transcript)
        prompt = context_prompt if context_prompt is not None else project.context_prompt
        deck_title = title or project.title or "Presentation"

        emit_task_event(
            "slides_generate",
            "Generating slides",
            payload={"project_id": project_id, "target": target},
        )
        started = time.perf_counter()
        result = self._generator.generate(
            project.transcript,
            target_slides=target,
            context_prompt=prompt or "",
            title=deck_title,
        )
        if not result.slides:
            raise SlideGenerationError("No slides were generated. Please try again.")

        changes: Dict[str, Any] = {"slides": result.slides, "target_slide_count": target}
        if context_prompt is not None:
            changes["context_prompt"] = context_prompt
        if slides_per_minute:
            changes["slides_per_minute"] = slides_per_minute
        self._repository.update_project(project_id, **changes)
        self._repository.add_usage_record(
            project_id=project_id,
            model_id=result.model_id,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            total_tokens=result.total_tokens,
            estimated_cost=result.estimated_cost,
        )
        emit_task_event(
            "slides_generated",
            "Slides generated",
            payload={"project_id": project_id, "count": len(result.slides)},
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        return SlideGenerationOutcome(
            project_id=project_id,
            slides=result.slides,
            target_slides=target,
            usage=result,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------
    def _save(self, project_id: int, slides: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        self._repository.update_slides(project_id, slides)
        return slides

    def replace_slides(self, project_id: int, slides: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        self._require_project(project_id)
        return self._save(project_id, list(slides))

    def update_slide(self, project_id: int, index: int, changes: Dict[str, Any]) -> List[Dict[str, Any]]:
        project = self._require_project(project_id)
        return self._save(project_id, update_slide(project.slides, index, changes))

    def add_slide(self, project_id: int, after_index: int) -> Dict[str, Any]:
        project = self._require_project(project_id)
        slides, position = add_slide(project.slides, after_index)
        self._save(project_id, slides)
        return {"slides": slides, "newIndex": position}

    def delete_slide(self, project_id: int, index: int) -> Dict[str, Any]:
        project = self._require_project(project_id)
        slides, deleted, position = delete_slide(project.slides, index)
        self._save(project_id, slides)
        return {"slides": slides, "deletedSlide": deleted, "newIndex": position}

    def add_image(self, project_id: int, index: int, image_url: str) -> List[Dict[str, Any]]:
        project = self._require_project(project_id)
        return self._save(project_id, add_image_to_slide(project.slides, index, image_url))

    def remove_image(self, project_id: int, index: int, image_url: str) -> List[Dict[str, Any]]:
        project = self._require_project(project_id)
        return self._save(project_id, remove_image_from_slide(project.slides, index, image_url))


__all__ = ["ProjectNotFoundError", "SlideGenerationOutcome", "SlideService"]
