import pytest

from config import settings
from conftest import PNG_BASE64, auth_header
from services.credits import get_balance
from services.errors import ValidationError
from services.generation import (
    FILTERED,
    ImageInput,
    build_generation_prompt,
    build_suggestion_instruction,
    has_valid_signature,
    sanitize_prompt,
    validate_images,
)


ARTIST_ID = "artist-user"
PNG_IMAGE = {"data": PNG_BASE64, "mimeType": "image/png"}


def _image_request(prompt="A watercolor fox in the same style", **overrides):
    body = {"images": [PNG_IMAGE], "prompt": prompt, "mode": "single"}
    body.update(overrides)
    return body


async def _balance(session_maker, user_id=ARTIST_ID):
    async with session_maker() as db:
        return await get_balance(user_id, db)


@pytest.mark.asyncio
async def test_generate_image_debits_one_credit(api_client, fake_generator, session_maker, seed_user):
    await seed_user(ARTIST_ID, credits=3)

    resp = await api_client.post("/generate/image", json=_image_request(), headers=auth_header(ARTIST_ID))
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["imageUrl"].startswith("data:image/png;base64,")
    assert payload["creditsRemaining"] == 2
    assert payload["remainingRequests"] == settings.QUOTA_GENERATE_IMAGE_PER_WINDOW - 1
    assert '"task": "dna_preservation"' in fake_generator.image_calls[0]
    assert await _balance(session_maker) == 2


@pytest.mark.asyncio
async def test_generate_image_without_credits_is_refused(api_client, fake_generator, seed_user):
    await seed_user(ARTIST_ID, credits=0)

    resp = await api_client.post("/generate/image", json=_image_request(), headers=auth_header(ARTIST_ID))
    assert resp.status_code == 402
    assert resp.json()["error"].startswith("Insufficient credits")
    assert fake_generator.image_calls == []


@pytest.mark.asyncio
async def test_upstream_failure_refunds_the_debit(api_client, fake_generator, session_maker, seed_user):
    await seed_user(ARTIST_ID, credits=1)
    fake_generator.fail = True

    resp = await api_client.post("/generate/image", json=_image_request(), headers=auth_header(ARTIST_ID))
    assert resp.status_code == 500
    assert resp.json()["error"] == "Could not generate the image"
    assert await _balance(session_maker) == 1


@pytest.mark.asyncio
async def test_generate_image_rejects_bad_input(api_client, fake_generator, session_maker, seed_user):
    await seed_user(ARTIST_ID, credits=5)
    headers = auth_header(ARTIST_ID)

    wrong_type = await api_client.post(
        "/generate/image",
        json=_image_request(images=[{"data": PNG_BASE64, "mimeType": "image/jpeg"}]),
        headers=headers,
    )
    assert wrong_type.status_code == 400
    assert "file type" in wrong_type.json()["error"]

    no_images = await api_client.post("/generate/image", json=_image_request(images=[]), headers=headers)
    assert no_images.status_code == 400

    empty_prompt = await api_client.post("/generate/image", json=_image_request(prompt="   "), headers=headers)
    assert empty_prompt.status_code == 400
    assert empty_prompt.json()["error"] == "No prompt provided"

    assert fake_generator.image_calls == []
    assert await _balance(session_maker) == 5


@pytest.mark.asyncio
async def test_quota_gate_returns_retry_after(api_client, monkeypatch, seed_user):
    await seed_user(ARTIST_ID, credits=10)
    monkeypatch.setattr(settings, "QUOTA_GENERATE_IMAGE_PER_WINDOW", 2)
    headers = auth_header(ARTIST_ID)

    for expected_remaining in (1, 0):
        ok = await api_client.post("/generate/image", json=_image_request(), headers=headers)
        assert ok.status_code == 200
        assert ok.json()["remainingRequests"] == expected_remaining

    limited = await api_client.post("/generate/image", json=_image_request(), headers=headers)
    assert limited.status_code == 429
    body = limited.json()
    assert body["error"] == "Rate limit exceeded. Try again in a moment."
    assert 1 <= body["retryAfter"] <= settings.QUOTA_WINDOW_SECONDS
    assert limited.headers["Retry-After"] == str(body["retryAfter"])

    other_user = "second-artist"
    await seed_user(other_user, credits=1)
    allowed = await api_client.post("/generate/image", json=_image_request(), headers=auth_header(other_user))
    assert allowed.status_code == 200


@pytest.mark.asyncio
async def test_memory_quota_backend(api_client, monkeypatch, seed_user):
    await seed_user(ARTIST_ID, credits=0)
    monkeypatch.setattr(settings, "QUOTA_BACKEND", "memory")
    monkeypatch.setattr(settings, "QUOTA_SUGGEST_PROMPTS_PER_WINDOW", 1)
    body = {"images": [PNG_IMAGE], "themes": ["cyberpunk"]}

    first = await api_client.post("/generate/suggestions", json=body, headers=auth_header(ARTIST_ID))
    assert first.status_code == 200
    second = await api_client.post("/generate/suggestions", json=body, headers=auth_header(ARTIST_ID))
    assert second.status_code == 429


@pytest.mark.asyncio
async def test_suggestions_with_template(api_client, fake_generator, seed_user):
    await seed_user(ARTIST_ID)
    headers = auth_header(ARTIST_ID)

    resp = await api_client.post(
        "/generate/suggestions",
        json={"images": [PNG_IMAGE], "themes": ["investors", "growth"], "templateId": "pitch-deck"},
        headers=headers,
    )
    assert resp.status_code == 200
    payload = resp.json()
    assert len(payload["prompts"]) == 2
    assert payload["remainingRequests"] == settings.QUOTA_SUGGEST_PROMPTS_PER_WINDOW - 1
    assert "pitch deck" in fake_generator.suggestion_calls[0]
    assert "investors, growth" in fake_generator.suggestion_calls[0]

    bad_template = await api_client.post(
        "/generate/suggestions",
        json={"images": [PNG_IMAGE], "themes": ["investors"], "templateId": "../../etc"},
        headers=headers,
    )
    assert bad_template.status_code == 400
    assert bad_template.json()["error"] == "Invalid template"

    no_themes = await api_client.post("/generate/suggestions", json={"images": [PNG_IMAGE], "themes": []}, headers=headers)
    assert no_themes.status_code == 400


@pytest.mark.asyncio
async def test_generation_requires_authentication(api_client, fake_generator):
    resp = await api_client.post("/generate/image", json=_image_request())
    assert resp.status_code == 401
    assert fake_generator.image_calls == []


def test_sanitize_prompt_filters_blocked_content():
    assert sanitize_prompt("  A calm lake at dawn  ") == "A calm lake at dawn"
    filtered = sanitize_prompt("A knight holding a gun\x07")
    assert FILTERED in filtered
    assert "gun" not in filtered
    assert "\x07" not in filtered

    with pytest.raises(ValidationError):
        sanitize_prompt("")
    with pytest.raises(ValidationError) as exc_info:
        sanitize_prompt("x" * 2001)
    assert "2000" in exc_info.value.message


def test_image_validation_checks_magic_bytes_and_size():
    assert has_valid_signature(PNG_BASE64, "image/png") is True
    assert has_valid_signature(PNG_BASE64, "image/webp") is False
    assert has_valid_signature("not base64!!", "image/png") is False

    oversized = ImageInput(data=PNG_BASE64 + "A" * (14 * 1024 * 1024), mime_type="image/png")
    with pytest.raises(ValidationError) as exc_info:
        validate_images([oversized])
    assert "10MB" in exc_info.value.message


def test_prompt_builders_pick_mode_and_template():
    assert '"task": "idea_fusion"' in build_generation_prompt("merge", "studio", 2)
    assert '"task": "dna_preservation"' in build_generation_prompt("keep", "studio", 1)
    assert "Idea Fusion" in build_suggestion_instruction(["a"], 3)
    assert "DNA Preservation" in build_suggestion_instruction(["a"], 1)
    with pytest.raises(ValidationError):
        build_suggestion_instruction(["a"], 1, "unknown-template")
