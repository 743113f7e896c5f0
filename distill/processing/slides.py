"""Slide deck generation through the OpenAI chat API and slide list editing."""

from __future__ import annotations

import json
import math
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from openai import OpenAI, OpenAIError


LOGGER = logging.getLogger(__name__)

Slide = Dict[str, Any]

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_SLIDES_PER_MINUTE = 6
MIN_SLIDES = 5
MAX_SLIDES = 30
WORDS_PER_MINUTE = 150
TEMPERATURE = 0.5
MAX_TOKENS = 3500
COST_PER_TOKEN = 0.0000003
LARGE_TRANSCRIPT_CHARS = 100_000

PLACEHOLDER_SLIDE_ID = "slide-placeholder"

_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")


class SlideGenerationError(RuntimeError):
    """Raised when the model response cannot be turned into slides."""


@dataclass
class GenerationResult:
    slides: List[Slide]
    model_id: str
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    @property
    def estimated_cost(self) -> float:
        return estimate_cost(self.total_tokens)


class SlideGenerator(Protocol):
    """Protocol describing a slide generation backend."""

    def generate(
        self,
        transcript: str,
        *,
        target_slides: int,
        context_prompt: str = "",
        title: str = "Presentation",
    ) -> GenerationResult:
        """Create roughly *target_slides* slides from *transcript*."""


def estimate_cost(total_tokens: int) -> float:
    return total_tokens * COST_PER_TOKEN


def calculate_target_slides(
    duration: Optional[float],
    slides_per_minute: float = DEFAULT_SLIDES_PER_MINUTE,
    transcript: Optional[str] = None,
) -> int:
    """Return how many slides to ask for, between 5 and 30.

    The video duration drives the count; without one the transcript length is
    converted to minutes at 150 spoken words per minute.
    """

    spm = slides_per_minute or DEFAULT_SLIDES_PER_MINUTE
    if duration and duration > 0:
        minutes = duration / 60.0
    else:
        words = len((transcript or "").split())
        minutes = words / float(WORDS_PER_MINUTE)
    # Halves round up.
    target = max(MIN_SLIDES, int(math.floor(minutes * spm + 0.5)))
    return min(target, MAX_SLIDES)


def placeholder_slide() -> Slide:
    return {
        "id": PLACEHOLDER_SLIDE_ID,
        "title": "Generate Your Slides",
        "content": (
            "Click the 'Generate Slides' button to process your content and create "
            "presentation slides."
        ),
    }


def slides_or_placeholder(slides: Optional[Sequence[Slide]]) -> List[Slide]:
    return list(slides) if slides else [placeholder_slide()]


def normalize_slides(raw: Sequence[Any]) -> List[Slide]:
    """Fill in ``id``, ``title``, ``content``, ``timestamp`` and ``transcriptTimestamps``."""

    normalized: List[Slide] = []
    for index, item in enumerate(raw):
        slide = item if isinstance(item, dict) else {}
        timestamp = slide.get("timestamp") or None
        timestamps = slide.get("transcriptTimestamps")
        if not isinstance(timestamps, list):
            timestamps = [timestamp] if timestamp else []
        normalized.append(
            {
                "id": slide.get("id") or f"slide-{index + 1}",
                "title": slide.get("title") or f"Slide {index + 1}",
                "content": slide.get("content") or "",
                "timestamp": timestamp,
                "transcriptTimestamps": timestamps,
            }
        )
    return normalized


def parse_slides_response(text: Optional[str]) -> List[Slide]:
    """Pull the JSON slide array out of a model reply."""

    if not text:
        raise SlideGenerationError("Empty response from the language model")
    match = _JSON_ARRAY.search(text)
    payload = match.group(0) if match else text
    try:
        slides = json.loads(payload)
    except ValueError as error:
        raise SlideGenerationError("Failed to parse slides from API response") from error
    if not isinstance(slides, list):
        raise SlideGenerationError("Response is not a valid array")
    return normalize_slides(slides)


SYSTEM_PROMPT_TEMPLATE = """You are an AI assistant that creates professional-quality study slides from a structured video transcript and chapter metadata. The slides are for professionals studying for licensure exams.

# Slide Creation Rules:

1. **Content Slides**:
   - Break the transcript into slides using logical topic breaks or chapter changes
   - Aim for 1-3 slides per minute of video content (target approximately {target} total slides)
   - Each slide must include:
     - A short, clear **title**
     - 2-5 **bullet points** with concise transcript-based information
     - Placeholder: "[Insert Frame]" (user adds image later)

2. **Question Slides**:
   Detect and handle both styles of questions:

   **A. Multiple Choice Questions (MCQs)**
   - Slide 1: Present the question clearly with answer choices (A-D format if applicable)
   - Slide 2: "Correct Answer" with:
     - The correct letter (e.g., **Correct Answer: C**)
     - 1-2 sentence explanation
   - Follow with **Explanation Slides** that elaborate on the concept using transcript content

   **B. Direct-Answer Questions (No A-D choices)**
   - Slide 1: Present the question text and leave space for the user to consider the answer
   - Slide 2: "Correct Answer" box with the exact answer provided in the video (verbatim if possible)
     - Include 1-2 sentence explanation
   - Follow with **Explanation Slides** from the related portion of the transcript

3. **Explanation Slides**:
   - Only use **verbatim or paraphrased content from the transcript**
   - Break into multiple slides as needed
   - Include "[Insert Frame]" placeholder

4. **Important Guidelines**:
   - Do not add your own knowledge
   - Do not skip explanations
   - Do not fabricate options or answers
   - All content must come directly from the transcript"""

FORMAT_INSTRUCTIONS = """
Each slide must be formatted as a JSON object with these fields:
- id: unique identifier (e.g., "slide-1")
- title: clear slide title
- content: bullet points or formatted content
- timestamp: relevant timestamp from transcript if available
- transcriptTimestamps: array of relevant timestamps (optional)

Expected JSON format:
[
  {
    "id": "slide-1",
    "title": "Introduction to the Topic",
    "content": "- Key point 1\\n- Key point 2\\n- Key point 3\\n[Insert Frame]",
    "timestamp": "05:30",
    "transcriptTimestamps": ["05:20", "05:35", "05:50"]
  },
  {
    "id": "slide-2",
    "title": "Sample Question",
    "content": "What is the recommended action in this scenario?\\nA. Option A\\nB. Option B\\nC. Option C\\nD. Option D",
    "timestamp": "06:45",
    "transcriptTimestamps": ["06:45"]
  },
  {
    "id": "slide-3",
    "title": "Correct Answer",
    "content": "**Correct Answer: C**\\n\\nThis is correct because [explanation from transcript].",
    "timestamp": "07:10",
    "transcriptTimestamps": ["07:10"]
  }
]"""


def build_prompts(
    transcript: str,
    target_slides: int,
    context_prompt: str = "",
    title: str = "Presentation",
) -> Tuple[str, str]:
    """Return the ``(system, user)`` prompt pair for a generation request."""

    system_prompt = SYSTEM_PROMPT_TEMPLATE.format(target=target_slides)
    user_prompt = (
        f'Based on this transcript, create a {target_slides}-slide presentation titled '
        f'"{title or "Presentation"}":'
    )
    if context_prompt and context_prompt.strip():
        user_prompt += f"\n\nAdditional context: {context_prompt}\n\n"
    user_prompt += f"\n\nTranscript:\n{transcript}\n\n"
    user_prompt += FORMAT_INSTRUCTIONS
    return system_prompt, user_prompt


@dataclass
class OpenAISlideGenerator:
    """Generate slides with ``client.chat.completions.create``."""

    model: str = DEFAULT_MODEL
    client: Any = None
    temperature: float = TEMPERATURE
    max_tokens: int = MAX_TOKENS
    _client: Any = field(default=None, init=False, repr=False)

    def _resolve_client(self) -> Any:
        if self.client is not None:
            return self.client
        if self._client is None:
            self._client = OpenAI()
        return self._client

    def generate(
        self,
        transcript: str,
        *,
        target_slides: int,
        context_prompt: str = "",
        title: str = "Presentation",
    ) -> GenerationResult:
        system_prompt, user_prompt = build_prompts(transcript, target_slides, context_prompt, title)
        started = time.perf_counter()
        try:
            response = self._resolve_client().chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except OpenAIError:
            # Service failures propagate unwrapped.
            raise
        except Exception as error:  # noqa: BLE001
            raise SlideGenerationError(f"Failed to generate slides: {error}") from error

        choices = getattr(response, "choices", None) or []
        message = getattr(choices[0], "message", None) if choices else None
        if message is None:
            raise SlideGenerationError("Invalid response from OpenAI API")
        slides = parse_slides_response(getattr(message, "content", None))

        usage = getattr(response, "usage", None)
        input_tokens = int(getattr(usage, "prompt_tokens", 0) or 0)
        output_tokens = int(getattr(usage, "completion_tokens", 0) or 0)
        total_tokens = int(getattr(usage, "total_tokens", 0) or (input_tokens + output_tokens))
        LOGGER.info(
            "Generated %d slides with %s in %.1fs (tokens in=%d out=%d total=%d, cost=$%.4f)",
            len(slides),
            self.model,
            time.perf_counter() - started,
            input_tokens,
            output_tokens,
            total_tokens,
            estimate_cost(total_tokens),
        )
        return GenerationResult(
            slides=slides,
            model_id=self.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total_tokens,
        )


# ----------------------------------------------------------------------
# Slide list editing
# ----------------------------------------------------------------------
def _check_index(slides: Sequence[Slide], index: int) -> None:
    if index < 0 or index >= len(slides):
        raise IndexError(f"Slide {index} does not exist")


def update_slide(slides: Sequence[Slide], index: int, changes: Dict[str, Any]) -> List[Slide]:
    _check_index(slides, index)
    updated = [dict(slide) for slide in slides]
    updated[index].update(changes)
    return updated


def add_slide(
    slides: Sequence[Slide], after_index: int, *, slide_id: Optional[str] = None
) -> Tuple[List[Slide], int]:
    """Insert a blank slide after *after_index*; return the slides and its index."""

    new_slide = {
        "id": slide_id or f"slide-{int(time.time() * 1000)}",
        "title": "New Slide",
        "content": "Add your content here...",
    }
    position = min(max(after_index + 1, 0), len(slides))
    updated = [dict(slide) for slide in slides]
    updated.insert(position, new_slide)
    return updated, position


def delete_slide(slides: Sequence[Slide], index: int) -> Tuple[List[Slide], Slide, int]:
    """Remove slide *index*; the last remaining slide cannot be deleted."""

    _check_index(slides, index)
    if len(slides) <= 1:
        raise ValueError("Cannot delete the only slide")
    deleted = slides[index]
    updated = [dict(slide) for position, slide in enumerate(slides) if position != index]
    return updated, deleted, min(index, len(updated) - 1)


def add_image_to_slide(slides: Sequence[Slide], index: int, image_url: str) -> List[Slide]:
    _check_index(slides, index)
    updated = [dict(slide) for slide in slides]
    slide = updated[index]
    if slide.get("imageUrls"):
        if image_url not in slide["imageUrls"]:
            slide["imageUrls"] = [*slide["imageUrls"], image_url]
    elif slide.get("imageUrl"):
        slide["imageUrls"] = [slide.pop("imageUrl"), image_url]
    else:
        slide["imageUrls"] = [image_url]
    return updated


def remove_image_from_slide(slides: Sequence[Slide], index: int, image_url: str) -> List[Slide]:
    _check_index(slides, index)
    updated = [dict(slide) for slide in slides]
    slide = updated[index]
    if isinstance(slide.get("imageUrls"), list):
        slide["imageUrls"] = [url for url in slide["imageUrls"] if url != image_url]
    elif slide.get("imageUrl") == image_url:
        slide.pop("imageUrl")
    return updated


def slide_image_urls(slide: Slide) -> List[str]:
    urls = [url for url in slide.get("imageUrls") or [] if url]
    if not urls and slide.get("imageUrl"):
        urls = [slide["imageUrl"]]
    return urls


def image_counts(slides: Optional[Sequence[Slide]]) -> Dict[str, int]:
    with_images = sum(1 for slide in slides or [] if slide_image_urls(slide))
    total = len(slides or [])
    return {"withImages": with_images, "withoutImages": total - with_images, "total": total}


__all__ = [
    "COST_PER_TOKEN",
    "GenerationResult",
    "LARGE_TRANSCRIPT_CHARS",
    "OpenAISlideGenerator",
    "PLACEHOLDER_SLIDE_ID",
    "SlideGenerationError",
    "SlideGenerator",
    "add_image_to_slide",
    "add_slide",
    "build_prompts",
    "calculate_target_slides",
    "delete_slide",
    "estimate_cost",
    "image_counts",
    "normalize_slides",
    "parse_slides_response",
    "placeholder_slide",
    "remove_image_from_slide",
    "slide_image_urls",
    "slides_or_placeholder",
    "update_slide",
]
