from __future__ import annotations

import csv
import io
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

import pytest
from openai import OpenAIError

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient
from PIL import Image

from distill.processing.slides import GenerationResult
from distill.processing.transcription import TranscriptResult
from distill.services.storage import ProjectRepository
from distill.web import server as web_server
from distill.web.server import create_app


class DummySlideGenerator:
    def __init__(self) -> None:
        self.calls = 0

    def generate(self, transcript, *, target_slides, context_prompt="", title="Presentation"):
        self.calls += 1
        return GenerationResult(
            slides=[
                {"id": "slide-1", "title": "Overview", "content": "- heart, lungs", "timestamp": "00:00"},
                {"id": "slide-2", "title": "Details", "content": "- valves", "timestamp": "00:01"},
            ],
            model_id="dummy-model",
            input_tokens=40,
            output_tokens=20,
            total_tokens=60,
        )


class DummyTranscriptionEngine:
    def transcribe(self, audio_path: Path, output_dir: Path, *, progress_callback=None) -> TranscriptResult:
        output_dir.mkdir(parents=True, exist_ok=True)
        text_path = output_dir / "transcript.txt"
        text_path.write_text(f"Transcript for {audio_path.name}.", encoding="utf-8")
        segments_path = output_dir / "segments.json"
        segments_path.write_text("[]", encoding="utf-8")
        return TranscriptResult(text_path=text_path, segments_path=segments_path)


class FailingSlideGenerator:
    def generate(self, transcript, *, target_slides, context_prompt="", title="Presentation"):
        raise OpenAIError("rate limited")


class SegmentedTranscriptionEngine:
    def transcribe(self, audio_path: Path, output_dir: Path, *, progress_callback=None) -> TranscriptResult:
        output_dir.mkdir(parents=True, exist_ok=True)
        text_path = output_dir / "transcript.txt"
        text_path.write_text("Intro. Main topic.", encoding="utf-8")
        segments_path = output_dir / "segments.json"
        segments = [{"start": 0.0, "end": 5.0, "text": "Intro."}, {"start": 65.0, "end": 70.0, "text": "Main topic."}]
        segments_path.write_text(json.dumps(segments), encoding="utf-8")
        return TranscriptResult(text_path=text_path, segments_path=segments_path)


class DummyFrameExtractor:
    def __init__(self, storage_root: Path) -> None:
        self._storage_root = storage_root
        self.requested: List[str] = []

    def extract(self, video_path, timestamps, output_dir, *, stem=None):
        output_dir.mkdir(parents=True, exist_ok=True)
        frames = []
        for timestamp in timestamps:
            self.requested.append(timestamp)
            target = output_dir / f"frame_{timestamp.replace(':', '-')}.jpg"
            Image.new("RGB", (16, 9), color=(40, 90, 160)).save(target, "JPEG")
            relative = target.relative_to(self._storage_root).as_posix()
            frames.append(
                {"id": f"frame-{target.stem}", "timestamp": timestamp, "imageUrl": f"/storage/{relative}"}
            )
        return frames


@pytest.fixture()
def api(temp_config):
    repository = ProjectRepository(temp_config)
    generator = DummySlideGenerator()
    extractor = DummyFrameExtractor(temp_config.storage_root)
    app = create_app(
        repository,
        config=temp_config,
        slide_generator=generator,
        transcription_engine=DummyTranscriptionEngine(),
        frame_extractor=extractor,
    )
    client = TestClient(app)
    client.repository = repository
    client.generator = generator
    client.extractor = extractor
    return client


def _create_transcript_project(client: TestClient, **overrides) -> dict:
    payload = {"transcript": "The heart pumps blood through the lungs.", "title": "Cardiology"}
    payload.update(overrides)
    response = client.post("/api/projects/transcript", json=payload)
    assert response.status_code == 201, response.text
    return response.json()["project"]


def _upload_video(client: TestClient, wav_bytes: bytes, title: str = "Recorded Lecture") -> dict:
    response = client.post(
        "/api/projects/video",
        files={"file": ("lecture.wav", wav_bytes, "audio/wav")},
        data={"title": title, "context_prompt": "exam focus"},
    )
    assert response.status_code == 201, response.text
    return response.json()["project"]


def test_project_crud(api: TestClient) -> None:
    project = _create_transcript_project(api)
    assert project["sourceType"] == "transcript-only"
    assert project["hasTranscript"] is True
    assert project["expiration"]["color"] == "green"

    listing = api.get("/api/projects").json()
    assert listing["total"] == 1
    assert "transcript" not in listing["projects"][0]
    assert api.get("/api/projects/recent").json()["projects"][0]["id"] == project["id"]

    updated = api.put(f"/api/projects/{project['id']}", json={"title": "  Cardio  "}).json()["project"]
    assert updated["title"] == "Cardio"
    assert api.put(f"/api/projects/{project['id']}", json={"title": "   "}).status_code == 400

    assert api.delete(f"/api/projects/{project['id']}").status_code == 204
    assert api.get(f"/api/projects/{project['id']}").status_code == 404


def test_transcript_and_url_validation(api: TestClient) -> None:
    assert api.post("/api/projects/transcript", json={"transcript": "   "}).status_code == 400
    assert api.post("/api/projects/url", json={"url": "not a url"}).status_code == 400
    assert (
        api.post("/api/projects/transcript", json={"transcript": "x", "folder_id": 99}).status_code
        == 404
    )

    created = api.post("/api/projects/url", json={"url": "https://example.com/lecture"})
    assert created.status_code == 201
    project = created.json()["project"]
    assert project["sourceType"] == "url"
    assert project["title"] == "example.com/lecture"
    assert project["sourceUrl"] == "https://example.com/lecture"


def test_video_upload_and_transcription(api: TestClient, wav_bytes: bytes, temp_config) -> None:
    project = _upload_video(api, wav_bytes)

    assert project["sourceType"] == "video"
    assert project["contextPrompt"] == "exam focus"
    assert project["videoMetadata"]["original_file_name"] == "lecture.wav"
    served = api.get(project["videoUrl"])
    assert served.status_code == 200
    assert served.content == wav_bytes

    transcribed = api.post(f"/api/projects/{project['id']}/transcribe")
    assert transcribed.status_code == 200, transcribed.text
    assert transcribed.json()["project"]["transcript"] == "Transcript for full_audio.wav."

    progress = api.get(f"/api/projects/{project['id']}/progress").json()["progress"]
    assert progress["progress"] == 100
    assert progress["status"] == "completed"

    info = api.get("/api/storage/info").json()
    assert info["storageUsed"] >= len(wav_bytes)


def test_upload_limits_and_missing_video(
    api: TestClient, wav_bytes: bytes, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(web_server, "_MAX_UPLOAD_BYTES", 100)
    response = api.post(
        "/api/projects/video",
        files={"file": ("lecture.wav", wav_bytes, "audio/wav")},
    )
    assert response.status_code == 413
    assert api.get("/api/projects").json()["total"] == 0

    project = _create_transcript_project(api)
    assert api.post(f"/api/projects/{project['id']}/transcribe").status_code == 400


def test_chunk_plan_and_status(api: TestClient, wav_bytes: bytes) -> None:
    project = _upload_video(api, wav_bytes)
    project_id = project["id"]

    assert api.get(f"/api/projects/{project_id}/chunks").json()["isChunked"] is False
    assert (
        api.put(f"/api/projects/{project_id}/chunks/0", json={"status": "completed"}).status_code
        == 400
    )

    planned = api.post(f"/api/projects/{project_id}/chunks/plan", json={"force": True}).json()
    assert planned["isChunked"] is True
    assert planned["chunking"]["chunks"][0]["status"] == "pending"

    updated = api.put(f"/api/projects/{project_id}/chunks/0", json={"status": "completed"})
    assert updated.status_code == 200
    assert updated.json()["chunking"]["chunks"][0]["status"] == "completed"
    assert (
        api.put(f"/api/projects/{project_id}/chunks/0", json={"status": "bogus"}).status_code == 422
    )
    assert (
        api.put(f"/api/projects/{project_id}/chunks/50", json={"status": "error"}).status_code
        == 400
    )


def test_slide_generation_and_editing(api: TestClient) -> None:
    project = _create_transcript_project(api)
    project_id = project["id"]

    placeholder = api.get(f"/api/projects/{project_id}/slides").json()["slides"]
    assert placeholder[0]["id"] == "slide-placeholder"

    generated = api.post(f"/api/projects/{project_id}/slides/generate", json={"slides_per_minute": 4})
    assert generated.status_code == 200, generated.text
    body = generated.json()
    assert [slide["title"] for slide in body["slides"]] == ["Overview", "Details"]
    assert body["targetSlides"] == 5
    assert body["usage"]["totalTokens"] == 60

    usage = api.get("/api/usage").json()["usage"]
    assert usage["totalTokens"] == 60
    assert usage["apiRequests"] == 1
    assert len(api.get("/api/usage/daily", params={"days": 3}).json()["days"]) == 3

    edited = api.put(f"/api/projects/{project_id}/slides/0", json={"title": "Intro"}).json()["slides"]
    assert edited[0]["title"] == "Intro"
    added = api.post(f"/api/projects/{project_id}/slides", json={"after_index": 1})
    assert added.status_code == 201
    assert added.json()["newIndex"] == 2

    with_image = api.post(
        f"/api/projects/{project_id}/slides/0/images", json={"image_url": "/storage/x.jpg"}
    ).json()["slides"]
    assert with_image[0]["imageUrls"] == ["/storage/x.jpg"]
    without_image = api.delete(
        f"/api/projects/{project_id}/slides/0/images", params={"url": "/storage/x.jpg"}
    ).json()["slides"]
    assert without_image[0]["imageUrls"] == []

    deleted = api.delete(f"/api/projects/{project_id}/slides/2").json()
    assert deleted["deletedSlide"]["title"] == "New Slide"
    assert api.put(f"/api/projects/{project_id}/slides/9", json={"title": "x"}).status_code == 400

    replaced = api.put(f"/api/projects/{project_id}/slides", json={"slides": [{"id": "a", "title": "A"}]})
    assert replaced.json()["slides"] == [{"id": "a", "title": "A"}]
    assert api.delete(f"/api/projects/{project_id}/slides/0").status_code == 400

    assert api.post("/api/usage/reset").json()["removed"] == 1
    assert api.get("/api/usage").json()["usage"]["totalTokens"] == 0


def test_slide_generation_requires_transcript(api: TestClient, wav_bytes: bytes) -> None:
    project = _upload_video(api, wav_bytes)

    response = api.post(f"/api/projects/{project['id']}/slides/generate", json={})

    assert response.status_code == 400
    assert api.generator.calls == 0
    assert api.post("/api/projects/999/slides/generate", json={}).status_code == 404


def test_slide_service_outage_returns_503(temp_config) -> None:
    repository = ProjectRepository(temp_config)
    client = TestClient(create_app(repository, config=temp_config, slide_generator=FailingSlideGenerator()))
    project = _create_transcript_project(client)

    response = client.post(f"/api/projects/{project['id']}/slides/generate", json={})

    assert response.status_code == 503
    assert "rate limited" in response.json()["detail"]
    progress = client.get(f"/api/projects/{project['id']}/progress").json()["progress"]
    assert progress["status"] == "error"


def test_transcript_formatting_options(api: TestClient) -> None:
    project = _create_transcript_project(api, transcript="Alice: Welcome to class.\nBob: Thanks.")
    url = f"/api/projects/{project['id']}/transcript"

    body = api.get(url).json()
    assert body["transcript"] == "Speaker 1: Welcome to class.\n\nSpeaker 2: Thanks."
    assert body["wordCount"] == 6
    assert body["sections"] == []
    assert body["hasSections"] is False
    assert body["hasSegments"] is False

    raw = api.get(url, params={"speakers": "false"}).json()["transcript"]
    assert raw == "Alice: Welcome to class.\nBob: Thanks."
    assert api.get("/api/projects/999/transcript").status_code == 404


def test_transcript_keeps_chunk_sections(api: TestClient) -> None:
    text = (
        "## Lecture - Part 1 (0:00 to 5:00)\n\nFirst part.\n\n"
        "## Lecture - Part 2 (5:00 to 10:00)\n\nSecond part."
    )
    project = _create_transcript_project(api, transcript=text)

    body = api.get(f"/api/projects/{project['id']}/transcript", params={"timestamps": "true"}).json()

    assert body["transcript"] == text
    assert body["hasSections"] is True
    assert body["sections"] == [
        "## Lecture - Part 1 (0:00 to 5:00)",
        "## Lecture - Part 2 (5:00 to 10:00)",
    ]


def test_transcript_timestamps_use_recorded_segments(temp_config, wav_bytes: bytes) -> None:
    repository = ProjectRepository(temp_config)
    client = TestClient(
        create_app(repository, config=temp_config, transcription_engine=SegmentedTranscriptionEngine())
    )
    project = _upload_video(client, wav_bytes)
    assert client.post(f"/api/projects/{project['id']}/transcribe").status_code == 200

    url = f"/api/projects/{project['id']}/transcript"
    timed = client.get(url, params={"timestamps": "true"}).json()
    assert timed["hasSegments"] is True
    assert timed["transcript"] == "[0:00] Intro. [1:05] Main topic."
    assert client.get(url).json()["transcript"] == "Intro. Main topic."

    repository.update_project(project["id"], transcript="Edited by hand.")
    edited = client.get(url, params={"timestamps": "true"}).json()
    assert edited["hasSegments"] is False
    assert edited["transcript"] == "Edited by hand."


def test_frames_and_exports(api: TestClient, wav_bytes: bytes, temp_config) -> None:
    project = _upload_video(api, wav_bytes)
    project_id = project["id"]
    api.put(
        f"/api/projects/{project_id}/slides",
        json={
            "slides": [
                {"id": "s1", "title": "Opening, remarks", "content": "Say \"hi\"", "timestamp": "00:00"},
                {"id": "s2", "title": "Closing", "content": "Bye", "timestamp": "00:01"},
            ]
        },
    )

    extracted = api.post(f"/api/projects/{project_id}/frames/extract", json={})
    assert extracted.status_code == 200, extracted.text
    body = extracted.json()
    assert body["matchedSlides"] == 2
    assert api.extractor.requested == ["00:00", "00:01"]
    assert len(api.get(f"/api/projects/{project_id}/frames").json()["frames"]) == 2
    stats = api.get(f"/api/projects/{project_id}/frames/statistics").json()["statistics"]
    assert stats["usedCount"] == 2

    frame_url = body["frames"][0]["imageUrl"]
    assert api.get(frame_url).status_code == 200

    csv_response = api.get(f"/api/projects/{project_id}/export/csv")
    assert csv_response.status_code == 200
    assert "recorded-lecture.csv" in csv_response.headers["content-disposition"]
    rows = list(csv.reader(io.StringIO(csv_response.text)))
    assert rows[0] == ["Slide Number", "Title", "Content"]
    assert rows[1] == ["1", "Opening, remarks", 'Say "hi"']

    anki = api.get(f"/api/projects/{project_id}/export/anki")
    assert list(csv.reader(io.StringIO(anki.text)))[2] == ["Closing", "Bye"]
    assert api.get(f"/api/projects/{project_id}/export/pptx").status_code == 400

    fitz = pytest.importorskip("fitz")
    pdf = api.get(f"/api/projects/{project_id}/export/pdf")
    assert pdf.status_code == 200
    assert pdf.headers["content-type"] == "application/pdf"
    document = fitz.open(stream=pdf.content, filetype="pdf")
    try:
        assert document.page_count == 2
    finally:
        document.close()

    frame_ids = [frame["id"] for frame in body["frames"]]
    remaining = api.post(
        f"/api/projects/{project_id}/frames/delete", json={"frame_ids": frame_ids[:1]}
    ).json()["frames"]
    assert [frame["id"] for frame in remaining] == frame_ids[1:]
    assert api.get(frame_url).status_code == 404


def test_frame_selection_rejects_temporary_urls(api: TestClient) -> None:
    project = _create_transcript_project(api)
    project_id = project["id"]
    api.put(f"/api/projects/{project_id}/slides", json={"slides": [{"id": "s1", "title": "One"}]})

    rejected = api.post(
        f"/api/projects/{project_id}/slides/0/frames",
        json={"frames": [{"id": "f", "timestamp": "00:01", "imageUrl": "blob:abc"}]},
    )
    assert rejected.status_code == 400

    accepted = api.post(
        f"/api/projects/{project_id}/slides/0/frames",
        json={"frames": [{"id": "f", "timestamp": "00:01", "imageUrl": "/storage/projects/f.jpg"}]},
    )
    assert accepted.status_code == 200
    assert accepted.json()["slides"][0]["imageUrls"] == ["/storage/projects/f.jpg"]

    purged = api.post(f"/api/projects/{project_id}/frames/purge-unused").json()
    assert purged["removed"] == 0
    assert api.post(f"/api/projects/{project_id}/frames/apply").json()["matchedSlides"] == 0


def test_export_requires_slides(api: TestClient) -> None:
    project = _create_transcript_project(api)

    response = api.get(f"/api/projects/{project['id']}/export/csv")

    assert response.status_code == 400


def test_folders(api: TestClient) -> None:
    created = api.post("/api/folders", json={"name": " Semester 1 "})
    assert created.status_code == 201
    folder = created.json()["folder"]
    assert folder["name"] == "Semester 1"
    assert api.post("/api/folders", json={"name": "   "}).status_code == 400

    first = _create_transcript_project(api, folder_id=folder["id"])
    second = _create_transcript_project(api, title="Loose")

    folders = api.get("/api/folders").json()["folders"]
    assert folders[0]["projectCount"] == 1
    unfiled = api.get("/api/folders/unfiled/projects").json()["projects"]
    assert [project["id"] for project in unfiled] == [second["id"]]

    moved = api.post("/api/folders/move", json={"project_ids": [second["id"]], "folder_id": folder["id"]})
    assert moved.json()["moved"] == 1
    inside = api.get(f"/api/folders/{folder['id']}/projects").json()["projects"]
    assert {project["id"] for project in inside} == {first["id"], second["id"]}

    renamed = api.put(f"/api/folders/{folder['id']}", json={"name": "Semester 2"}).json()["folder"]
    assert renamed["name"] == "Semester 2"
    assert renamed["projectCount"] == 2

    assert api.delete(f"/api/folders/{folder['id']}").status_code == 204
    assert len(api.get("/api/folders/unfiled/projects").json()["projects"]) == 2
    assert api.get("/api/folders/999/projects").status_code == 404


def test_storage_endpoints(api: TestClient, temp_config) -> None:
    stray = temp_config.projects_root / "77" / "video_uploads" / "stray.mp4"
    stray.parent.mkdir(parents=True)
    stray.write_bytes(b"s" * 64)

    breakdown = api.get("/api/storage/breakdown").json()["breakdown"]
    assert breakdown["videos"] == 64
    synced = api.post("/api/storage/sync").json()
    assert synced["storageUsed"] == 64

    cleaned = api.post("/api/storage/cleanup").json()
    assert cleaned["deletedCount"] == 1
    assert not stray.exists()
    assert api.get("/api/storage/info").json()["storageUsed"] == 0
    assert api.get("/api/storage/disk").json()["free"] > 0
    assert api.post("/api/storage/purge-expired").json() == {"removed": []}


def test_expired_projects_are_purged_on_startup(temp_config) -> None:
    repository = ProjectRepository(temp_config)
    expired = repository.add_project(
        "Old", transcript="t", now=datetime.now(timezone.utc) - timedelta(days=5)
    )
    fresh = repository.add_project("New", transcript="t")
    app = create_app(repository, config=temp_config, slide_generator=DummySlideGenerator())

    with TestClient(app) as client:
        ids = [project["id"] for project in client.get("/api/projects").json()["projects"]]

    assert ids == [fresh]
    assert repository.get_project(expired) is None


def test_settings_round_trip(api: TestClient) -> None:
    defaults = api.get("/api/settings").json()["settings"]
    assert defaults["theme"] == "system"
    assert defaults["transcription_provider"] == "openai"

    payload = {**defaults, "theme": "dark", "slides_per_minute": 3, "whisper_model": "small"}
    saved = api.put("/api/settings", json=payload)
    assert saved.status_code == 200
    assert api.get("/api/settings").json()["settings"]["theme"] == "dark"

    assert api.put("/api/settings", json={**defaults, "theme": "neon"}).status_code == 422


def test_errors_become_notifications(api: TestClient) -> None:
    assert api.get("/api/projects/404").status_code == 404

    toasts = api.get("/api/notifications").json()
    assert toasts["notifications"][-1]["kind"] == "error"
    assert toasts["notifications"][-1]["title"] == "Not found"
    marker = toasts["next"]

    _create_transcript_project(api)
    newer = api.get("/api/notifications", params={"after": marker}).json()["notifications"]
    assert [toast["title"] for toast in newer] == ["Project created"]

    assert api.delete("/api/notifications").status_code == 204
    assert api.get("/api/notifications").json()["notifications"] == []


def test_debug_log_endpoints(api: TestClient) -> None:
    assert api.get("/api/projects/404").status_code == 404

    logs = api.get("/api/debug/logs").json()
    assert logs["logs"]
    assert logs["next"] >= logs["logs"][-1]["id"]

    download = api.get("/api/debug/logs/download")
    assert download.status_code == 200
    assert download.headers["content-type"].startswith("text/plain")
    assert download.headers["content-disposition"].endswith('.log"')
