import base64
import io
import json
import os
import sys
import threading
from pathlib import Path
from typing import Callable, Optional

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_section_studio.db")
os.environ.setdefault("GEMINI_API_KEY", "test-gemini-key")
os.environ.setdefault("GEMINI_API_BASE_URL", "https://gemini.test/v1beta")
os.environ.setdefault("CLERK_JWKS_URL", "https://clerk.test/.well-known/jwks.json")
os.environ.setdefault("MEDIA_STORAGE_BUCKET", "test-bucket")

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from section_studio.auth.dependencies import AuthContext, get_current_user
from section_studio.config import settings
from section_studio.db.base import Base, SessionLocal, engine, init_db
from section_studio.db.enums import ImageSourceKindEnum
from section_studio.db.models import ImageAsset, Page, Section
from section_studio.main import app
from section_studio.routers.regenerate import get_pipeline_deps
from section_studio.services.jobs import PipelineDeps
from section_studio.services.media_storage import MediaStorageError, StoredObject
from section_studio.services.usage import DatabaseUsageRecorder, QuotaDecision, SettingsCredentialResolver

TEST_USER_ID = "user_test"
IMAGE_HOST = "https://images.test"
REPLICATE_BASE_URL = "https://replicate.test/v1"


def png_bytes(width: int, height: int, color=(200, 40, 40)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


def gemini_image_response(img: Image.Image, text: Optional[str] = None) -> httpx.Response:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    parts = [{"inlineData": {"mimeType": "image/png", "data": base64.b64encode(buf.getvalue()).decode("ascii")}}]
    if text:
        parts.insert(0, {"text": text})
    return httpx.Response(200, json={"candidates": [{"content": {"parts": parts}, "finishReason": "STOP"}]})


def inline_images(request: httpx.Request) -> list[Image.Image]:
    body = json.loads(request.content)
    images = []
    for part in body["contents"][0]["parts"]:
        inline = part.get("inlineData")
        if inline:
            images.append(Image.open(io.BytesIO(base64.b64decode(inline["data"]))))
    return images


def scale_responder(factor: float) -> Callable[[httpx.Request], httpx.Response]:
    """Answers with the primary (last) input image scaled by ``factor``."""

    def _respond(request: httpx.Request) -> httpx.Response:
        primary = inline_images(request)[-1]
        size = (round(primary.width * factor), round(primary.height * factor))
        return gemini_image_response(primary.convert("RGB").resize(size))

    return _respond


def failing_responder(request: httpx.Request) -> httpx.Response:
    return httpx.Response(503, json={"error": {"message": "overloaded"}})


class FakeBackend:
    """Serves section images and stands in for the Gemini endpoint behind httpx.MockTransport."""

    def __init__(self) -> None:
        self.images: dict[str, bytes] = {}
        self.gemini_responder: Callable[[httpx.Request], httpx.Response] = scale_responder(1.0)
        self.gemini_requests: list[httpx.Request] = []
        self.replicate_responder: Optional[Callable[[httpx.Request], httpx.Response]] = None
        self.replicate_requests: list[httpx.Request] = []

    def add_image(self, name: str, width: int, height: int, color=(200, 40, 40)) -> str:
        uri = f"{IMAGE_HOST}/{name}.png"
        self.images[uri] = png_bytes(width, height, color)
        return uri

    def handle(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if ":generateContent" in url:
            self.gemini_requests.append(request)
            return self.gemini_responder(request)
        if url.startswith(REPLICATE_BASE_URL) and self.replicate_responder is not None:
            self.replicate_requests.append(request)
            return self.replicate_responder(request)
        if request.method == "GET" and url in self.images:
            return httpx.Response(200, content=self.images[url], headers={"content-type": "image/png"})
        return httpx.Response(404, text="not found")

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


class FakeStorage:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.fail = False
        self.threads: set[int] = set()

    def put_image(self, data: bytes, *, content_type: str = "image/png", ext: str = "png") -> StoredObject:
        self.threads.add(threading.get_ident())
        if self.fail:
            raise MediaStorageError("bucket unavailable")
        key = f"sections/{len(self.objects):04d}.{ext}"
        self.objects[key] = data
        return StoredObject(key=key, uri=f"https://cdn.test/{key}", sha256="0" * 64, size_bytes=len(data))


class StaticQuota:
    def __init__(self, allowed: bool = True, reason: Optional[str] = None) -> None:
        self.decision = QuotaDecision(allowed=allowed, reason=reason)
        self.calls: list[tuple[str, str, int]] = []

    def check_allowed(self, user_id: str, operation_kind: str, item_count: int) -> QuotaDecision:
        self.calls.append((user_id, operation_kind, item_count))
        return self.decision


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    init_db()
    yield


@pytest.fixture()
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture()
def quota() -> StaticQuota:
    return StaticQuota()


@pytest.fixture()
def pipeline_deps(backend, storage, quota) -> PipelineDeps:
    return PipelineDeps(
        settings=settings,
        session_factory=SessionLocal,
        storage=storage,
        quota=quota,
        credentials=SettingsCredentialResolver(settings),
        usage=DatabaseUsageRecorder(SessionLocal),
        transport=backend.transport(),
    )


@pytest.fixture()
def seed_page(db_session, backend):
    """Creates a page owned by the test user with sections of the given (width, height) sizes."""

    def _seed(sizes: list[tuple[int, int]], owner: str = TEST_USER_ID) -> tuple[Page, list[Section]]:
        page = Page(owner_user_id=owner, title="Landing")
        db_session.add(page)
        db_session.flush()
        sections = []
        for index, (width, height) in enumerate(sizes):
            uri = backend.add_image(f"{page.id}-{index}", width, height, color=(40 * index % 255, 120, 200))
            asset = ImageAsset(
                uri=uri,
                width=width,
                height=height,
                source_kind=ImageSourceKindEnum.upload,
                owner_user_id=owner,
            )
            db_session.add(asset)
            db_session.flush()
            section = Section(page_id=page.id, order=index, image_id=asset.id)
            db_session.add(section)
            sections.append(section)
        db_session.commit()
        for section in sections:
            db_session.refresh(section)
        return page, sections

    return _seed


@pytest.fixture()
def auth_context() -> AuthContext:
    return AuthContext(user_id=TEST_USER_ID)


@pytest.fixture()
def api_client(auth_context, pipeline_deps):
    app.dependency_overrides[get_current_user] = lambda: auth_context
    app.dependency_overrides[get_pipeline_deps] = lambda: pipeline_deps
    try:
        with TestClient(app) as client:
            yield client
    finally:
        app.dependency_overrides.clear()


def parse_sse(body: str) -> list[dict]:
    events = []
    for chunk in body.split("\n\n"):
        chunk = chunk.strip()
        if chunk.startswith("data: "):
            events.append(json.loads(chunk[len("data: "):]))
    return events
