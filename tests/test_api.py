import uuid

from fastapi.testclient import TestClient

from conftest import parse_sse
from section_studio.db.enums import HistoryActionEnum, ImageFieldEnum, ImageSourceKindEnum
from section_studio.main import app
from section_studio.routers.regenerate import get_pipeline_deps
from section_studio.services.history import HistoryTracker, NewImage
from section_studio.services.usage import QuotaDecision


def _regenerate_page(client, page_id, payload):
    return client.post(f"/regenerate/page/{page_id}", json=payload)


def test_health(api_client):
    assert api_client.get("/health").json() == {"ok": True}
    assert api_client.get("/health/db").json() == {"db": "ok"}


def test_missing_bearer_token_is_rejected(pipeline_deps, seed_page):
    page, _ = seed_page([(100, 50)])
    app.dependency_overrides[get_pipeline_deps] = lambda: pipeline_deps
    try:
        with TestClient(app) as client:
            response = _regenerate_page(client, page.id, {"mode": "upscale"})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 401
    assert response.json()["detail"] == "Missing bearer token"


def test_unknown_page_is_404(api_client):
    response = _regenerate_page(api_client, uuid.uuid4(), {"mode": "upscale"})

    assert response.status_code == 404


def test_page_of_another_user_is_403(api_client, seed_page):
    page, _ = seed_page([(100, 50)], owner="someone_else")

    response = _regenerate_page(api_client, page.id, {"mode": "upscale"})

    assert response.status_code == 403


def test_page_without_images_is_400(api_client, seed_page, db_session):
    page, sections = seed_page([(100, 50)])
    sections[0].image_id = None
    db_session.commit()

    response = _regenerate_page(api_client, page.id, {"mode": "upscale"})

    assert response.status_code == 400
    assert response.json()["detail"] == "No section images to process"


def test_unknown_target_section_is_404(api_client, seed_page):
    page, _ = seed_page([(100, 50)])

    response = _regenerate_page(api_client, page.id, {"mode": "upscale", "targetSectionIds": [str(uuid.uuid4())]})

    assert response.status_code == 404


def test_invalid_mode_parameters_are_rejected(api_client, seed_page):
    page, _ = seed_page([(100, 50)])

    too_wide = _regenerate_page(api_client, page.id, {"mode": "upscale", "resolution": 10000})
    no_restore = _regenerate_page(api_client, page.id, {"mode": "restore"})
    tiny_restore = _regenerate_page(
        api_client, page.id, {"mode": "restore", "restore": {"topAmount": 4, "bottomAmount": 0, "prompt": "sky"}}
    )
    bad_style = _regenerate_page(api_client, page.id, {"mode": "restyle", "styleParams": {"style": "neon"}})

    assert too_wide.status_code == 400
    assert no_restore.status_code == 400
    assert tiny_restore.status_code == 400
    assert bad_style.status_code == 422


def test_quota_refusal_is_402_before_streaming(api_client, seed_page, quota, backend):
    page, _ = seed_page([(100, 50), (100, 50)])
    quota.decision = QuotaDecision(allowed=False, reason="Monthly generation limit reached")

    response = _regenerate_page(api_client, page.id, {"mode": "upscale"})

    assert response.status_code == 402
    assert quota.calls == [("user_test", "upscale", 2)]
    assert backend.gemini_requests == []


def test_page_regeneration_streams_events(api_client, seed_page):
    page, sections = seed_page([(300, 200), (300, 150)])

    response = _regenerate_page(api_client, page.id, {"mode": "upscale", "resolution": 600})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = parse_sse(response.text)
    assert [event["type"] for event in events] == [
        "start",
        "progress",
        "item_complete",
        "progress",
        "item_complete",
        "complete",
    ]
    assert events[0]["total"] == 2
    assert events[-1]["succeededCount"] == 2
    assert [event["itemId"] for event in events if event["type"] == "item_complete"] == [
        str(section.id) for section in sections
    ]


def test_target_section_ids_limit_the_job(api_client, seed_page):
    page, sections = seed_page([(300, 200), (300, 200), (300, 200)])

    response = _regenerate_page(
        api_client, page.id, {"mode": "upscale", "resolution": 600, "targetSectionIds": [str(sections[2].id)]}
    )

    events = parse_sse(response.text)
    assert events[0] == {"type": "start", "total": 1}
    assert events[-1]["results"][0]["itemId"] == str(sections[2].id)


def test_single_section_restore(api_client, seed_page):
    _, sections = seed_page([(200, 100)])

    response = api_client.post(
        f"/regenerate/section/{sections[0].id}",
        json={"mode": "restore", "restore": {"direction": "bottom", "bottomAmount": 40, "prompt": "footer band"}},
    )

    events = parse_sse(response.text)
    assert events[-1]["type"] == "complete"
    assert events[-1]["results"][0]["afterSize"] == {"width": 200, "height": 140}


def test_history_revert_and_offsets(api_client, seed_page):
    _, (section,) = seed_page([(300, 200)])
    original_id = str(section.image_id)
    api_client.post(f"/regenerate/section/{section.id}", json={"mode": "upscale", "resolution": 600})

    history = api_client.get(f"/sections/{section.id}/history").json()
    assert len(history["entries"]) == 1
    entry = history["entries"][0]
    assert entry["previousImageId"] == original_id
    assert entry["actionKind"] == "upscale"
    assert history["currentImageId"] == entry["newImageId"]

    reverted = api_client.post(f"/sections/{section.id}/revert", json={"imageId": original_id})
    assert reverted.status_code == 200
    assert reverted.json()["newImageId"] == original_id
    assert reverted.json()["actionKind"] == "revert"

    unknown = api_client.post(f"/sections/{section.id}/revert", json={"imageId": str(uuid.uuid4())})
    assert unknown.status_code == 400

    offsets = api_client.patch(f"/sections/{section.id}/boundary-offsets", json={"top": 40, "bottom": 25})
    assert offsets.status_code == 200
    assert offsets.json()["boundaryOffsetTop"] == 40
    assert offsets.json()["boundaryOffsetBottom"] == 25


def test_history_reports_the_requested_field(api_client, seed_page, db_session):
    _, (section,) = seed_page([(300, 200)])
    original_id = str(section.image_id)
    tracker = HistoryTracker(db_session)
    primary = tracker.commit(
        section.id,
        ImageFieldEnum.primary,
        NewImage(uri="https://cdn.test/p.png", width=600, height=400, source_kind=ImageSourceKindEnum.upscale),
        HistoryActionEnum.upscale,
    )
    mobile = tracker.commit(
        section.id,
        ImageFieldEnum.mobile,
        NewImage(uri="https://cdn.test/m.png", width=300, height=400, source_kind=ImageSourceKindEnum.restyle),
        HistoryActionEnum.restyle,
    )

    history = api_client.get(f"/sections/{section.id}/history", params={"imageField": "mobile"}).json()
    assert history["currentImageId"] == str(mobile.new_image_id)
    assert [entry["targetField"] for entry in history["entries"]] == ["mobile"]

    everything = api_client.get(f"/sections/{section.id}/history").json()
    assert everything["currentImageId"] == str(primary.new_image_id)
    assert len(everything["entries"]) == 2

    crossed = api_client.post(
        f"/sections/{section.id}/revert", json={"imageId": original_id, "imageField": "mobile"}
    )
    assert crossed.status_code == 400
