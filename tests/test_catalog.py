from pathlib import Path

from channel_relay.translation.catalog import (
    append_fake_stream_variants,
    augment_model_listing_payload,
    extract_model_path_info,
    is_model_listing_path,
    is_text_model,
    load_fallback_models,
    model_identifier,
    to_openai_model_entry,
)

PREFIX = "假流式/"


def test_extract_model_path_info_splits_model_and_endpoint() -> None:
    info = extract_model_path_info(
        "/v1beta/models/gemini-2.5-pro:streamGenerateContent"
    )

    assert info is not None
    assert info.model_id == "gemini-2.5-pro"
    assert info.suffix == ":streamGenerateContent"
    assert info.with_model("gemini-2.5-flash") == (
        "/v1beta/models/gemini-2.5-flash:streamGenerateContent"
    )


def test_extract_model_path_info_keeps_prefixed_identifier_whole() -> None:
    encoded = "%E5%81%87%E6%B5%81%E5%BC%8F%2Fgemini-2.5-pro"
    info = extract_model_path_info(
        f"/v1beta/models/{encoded}:generateContent", fake_prefix=PREFIX
    )

    assert info is not None
    assert info.model_id == f"{PREFIX}gemini-2.5-pro"
    assert info.with_model("gemini-2.5-pro") == (
        "/v1beta/models/gemini-2.5-pro:generateContent"
    )


def test_extract_model_path_info_ignores_other_paths() -> None:
    assert extract_model_path_info("/v1beta/files/abc") is None
    assert extract_model_path_info("/v1beta/models/") is None
    assert is_model_listing_path("/v1beta/models/")
    assert not is_model_listing_path("/v1beta/models/gemini-2.5-pro")


def test_model_identifier_shapes() -> None:
    assert model_identifier("gemini-2.5-pro") == "gemini-2.5-pro"
    assert model_identifier({"name": "models/gemini-2.5-pro"}) == "gemini-2.5-pro"
    assert (
        model_identifier({"name": f"models/{PREFIX}gemini-2.5-pro"}, fake_prefix=PREFIX)
        == f"{PREFIX}gemini-2.5-pro"
    )
    assert model_identifier({"displayName": "Pretty"}) == "Pretty"
    assert model_identifier(42) is None


def test_text_model_detection() -> None:
    assert is_text_model({"name": "models/gemini-2.5-pro"})
    assert not is_text_model({"name": "models/text-embedding-004"})
    assert not is_text_model(
        {"name": "models/aqa-x", "supportedGenerationMethods": ["embedContent"]}
    )
    assert is_text_model(
        {"name": "models/aqa-y", "supportedGenerationMethods": ["generateAnswer"]}
    )


def test_fake_stream_variants_are_appended_once() -> None:
    models = [
        {"name": "models/gemini-2.5-pro", "displayName": "Gemini 2.5 Pro"},
        {"name": "models/text-embedding-004"},
        "gemini-2.5-flash",
    ]

    augmented = append_fake_stream_variants(models, PREFIX)

    assert augmented[:3] == models
    assert augmented[3] == {
        "name": f"models/{PREFIX}gemini-2.5-pro",
        "displayName": f"{PREFIX}Gemini 2.5 Pro",
        "id": f"{PREFIX}gemini-2.5-pro",
    }
    assert augmented[4] == f"{PREFIX}gemini-2.5-flash"
    assert len(augmented) == 5
    assert append_fake_stream_variants(augmented, PREFIX) is augmented


def test_augment_model_listing_payload_updates_models_key() -> None:
    payload = {"models": [{"name": "models/gemini-2.5-pro"}], "nextPageToken": "t"}

    augmented, changed = augment_model_listing_payload(payload, PREFIX)

    assert changed
    assert augmented["nextPageToken"] == "t"
    assert [model["name"] for model in augmented["models"]] == [
        "models/gemini-2.5-pro",
        f"models/{PREFIX}gemini-2.5-pro",
    ]
    assert len(payload["models"]) == 1


def test_openai_model_entry() -> None:
    entry = to_openai_model_entry(
        {
            "name": "models/gemini-2.5-pro",
            "displayName": "Gemini 2.5 Pro",
            "supportedGenerationMethods": ["generateContent"],
        },
        created=1,
    )

    assert entry == {
        "id": "gemini-2.5-pro",
        "object": "model",
        "created": 1,
        "owned_by": "google",
        "name": "models/gemini-2.5-pro",
        "display_name": "Gemini 2.5 Pro",
        "supported_generation_methods": ["generateContent"],
    }
    assert to_openai_model_entry({}) is None


def test_load_fallback_models(tmp_path: Path) -> None:
    catalog = tmp_path / "models.yaml"
    catalog.write_text(
        "models:\n  - gemini-2.5-pro\n  - name: models/gemini-2.5-flash\n  - 3\n",
        encoding="utf-8",
    )
    broken = tmp_path / "broken.yaml"
    broken.write_text("- just\n- a list\n", encoding="utf-8")

    assert load_fallback_models(catalog, "default") == [
        "gemini-2.5-pro",
        {"name": "models/gemini-2.5-flash"},
    ]
    assert load_fallback_models(tmp_path / "missing.yaml", "default") == ["default"]
    assert load_fallback_models(broken, "default") == ["default"]
