import base64
import json

import httpx
import pytest

from services.payload_builder import (
    CheckpointRejected,
    InvalidSeed,
    NoImageSlot,
    NoSeedSlot,
    PayloadBuilder,
    PayloadTooLarge,
    SEED_UPPER_BOUND,
    SourceImageError,
    TemplateError,
    ensure_latent_image_config,
    ensure_request_size_limit,
    ensure_video_output_name,
    iter_nodes,
    load_workflow_template,
    normalize_dim,
    resolve_image_transport,
    resolve_seed,
    resolve_workflow_candidates,
    walk_json,
)
from tests.conftest import SOURCE_IMAGE_URL, make_storage_client, png_head_handler


def _nodes_by_type(workflow):
    return {node["class_type"]: node for node in iter_nodes(workflow)}


def _write_template(directory, name, workflow):
    (directory / name).write_text(json.dumps(workflow), encoding="utf-8")


MINIMAL_TEMPLATE = {
    "1": {"class_type": "LoadImage", "inputs": {"image": "placeholder.png"}},
    "2": {"class_type": "KSampler", "inputs": {"seed": 0, "steps": 20}},
}


# ── Template resolution ─────────────────────────────────────


def test_style_candidates_fall_back_to_default():
    assert resolve_workflow_candidates("Sketch") == ["workflow_api_sketch.json", "workflow_api.json"]
    assert resolve_workflow_candidates(" water-colour ") == ["workflow_api_watercolor.json", "workflow_api.json"]
    assert resolve_workflow_candidates("Pencil") == ["workflow_api_sketch.json", "workflow_api.json"]
    assert resolve_workflow_candidates("cyberpunk") == ["workflow_api.json"]
    assert resolve_workflow_candidates("") == ["workflow_api.json"]


@pytest.mark.parametrize("style", ["default", "sketch", "watercolor", "oil"])
def test_bundled_templates_load(style):
    workflow = load_workflow_template(style)
    types = _nodes_by_type(workflow)
    assert "KSampler" in types
    assert "LoadImage" in types


def test_missing_style_template_falls_back(tmp_path):
    _write_template(tmp_path, "workflow_api.json", MINIMAL_TEMPLATE)
    workflow = load_workflow_template("sketch", tmp_path)
    assert workflow["1"]["inputs"]["image"] == "placeholder.png"


def test_unparsable_template_is_fatal(tmp_path):
    (tmp_path / "workflow_api_sketch.json").write_text("{not json", encoding="utf-8")
    _write_template(tmp_path, "workflow_api.json", MINIMAL_TEMPLATE)
    with pytest.raises(TemplateError, match="workflow_api_sketch.json"):
        load_workflow_template("sketch", tmp_path)


def test_no_template_lists_candidates(tmp_path):
    with pytest.raises(TemplateError, match="Tried: workflow_api_oil.json, workflow_api.json"):
        load_workflow_template("oil", tmp_path)


def test_templates_are_fresh_copies():
    first = load_workflow_template("default")
    first["6"]["inputs"]["seed"] = 99
    assert load_workflow_template("default")["6"]["inputs"]["seed"] == 0


def test_walk_json_handles_shared_references():
    shared = {"class_type": "KSampler", "inputs": {"seed": 1}}
    tree = {"a": shared, "b": [shared, {"x": shared}]}
    objects = list(walk_json(tree))
    assert sum(1 for obj in objects if obj is shared) == 1


# ── Injection helpers ───────────────────────────────────────


def test_resolve_seed_range():
    assert 0 <= resolve_seed() < SEED_UPPER_BOUND
    assert resolve_seed(42) == 42
    with pytest.raises(InvalidSeed):
        resolve_seed(-1)
    with pytest.raises(InvalidSeed):
        resolve_seed(True)


def test_image_transport_detection():
    assert resolve_image_transport({"class_type": "LoadImage", "inputs": {}}) == "images"
    assert resolve_image_transport({"class_type": "LoadImageFromUrl", "inputs": {}}) == "url"
    assert resolve_image_transport({"class_type": "LoadImageFromUrl", "inputs": {}}, "base64") == "images"
    assert resolve_image_transport({"class_type": "LoadImage", "inputs": {}}, "URL") == "url"
    assert resolve_image_transport({"class_type": "LoadImage", "inputs": {}}, "bogus") == "images"


def test_latent_dimensions_are_normalized():
    nodes = iter_nodes(
        {"1": {"class_type": "EmptyLatentImage", "inputs": {"width": "1000px", "height": 12, "batch_size": 0}}}
    )
    ensure_latent_image_config(nodes)
    assert nodes[0]["inputs"] == {"width": 1000, "height": 1024, "batch_size": 1}
    assert normalize_dim(1023) == 1016
    assert normalize_dim(None) == 1024


def test_video_prefix_only_when_missing():
    nodes = iter_nodes({"9": {"class_type": "VHS_VideoCombine", "inputs": {"filename_prefix": ""}}})
    ensure_video_output_name(nodes, "Oil Paint!", now_ms=1700000000000)
    assert nodes[0]["inputs"]["filename_prefix"] == "runpod-oil-paint--1700000000000"

    named = iter_nodes({"9": {"class_type": "VHS_VideoCombine", "inputs": {"filename_prefix": "keep"}}})
    ensure_video_output_name(named, "oil")
    assert named[0]["inputs"]["filename_prefix"] == "keep"


def test_request_size_limit():
    assert ensure_request_size_limit("abc", 3) == 3
    with pytest.raises(PayloadTooLarge, match="RUNPOD_IMAGE_TRANSPORT=url"):
        ensure_request_size_limit("abcd", 3)


# ── Builder ─────────────────────────────────────────────────


def test_build_url_transport(settings):
    prepared = PayloadBuilder(settings).build(SOURCE_IMAGE_URL, "sketch", 1234)
    types = _nodes_by_type(prepared.workflow)

    assert prepared.image_transport == "url"
    assert prepared.images == []
    assert types["LoadImage"]["inputs"]["image"] == SOURCE_IMAGE_URL
    assert types["KSampler"]["inputs"]["seed"] == 1234
    assert types["EmptyLatentImage"]["inputs"]["width"] == 1024
    assert "{{style}}" not in json.dumps(prepared.workflow)
    assert "sketch drawing" in json.dumps(prepared.workflow)
    # Template checkpoint kept when nothing is configured.
    assert types["CheckpointLoaderSimple"]["inputs"]["ckpt_name"] == "sd_xl_base_1.0.safetensors"
    assert prepared.to_input() == {"workflow": prepared.workflow}


def test_build_injects_configured_checkpoint(settings):
    configured = settings.model_copy(update={"runpod_checkpoint_name": "juggernaut-xl.safetensors"})
    prepared = PayloadBuilder(configured).build(SOURCE_IMAGE_URL, "default", 1)
    ckpt = _nodes_by_type(prepared.workflow)["CheckpointLoaderSimple"]["inputs"]["ckpt_name"]
    assert ckpt == "juggernaut-xl.safetensors"


def test_per_style_checkpoint_wins(settings, monkeypatch):
    monkeypatch.setenv("RUNPOD_CHECKPOINT_WATERCOLOR", "aquarelle-v3.safetensors")
    configured = settings.model_copy(update={"runpod_checkpoint_name": "juggernaut-xl.safetensors"})
    prepared = PayloadBuilder(configured).build(SOURCE_IMAGE_URL, "watercolor", 1)
    ckpt = _nodes_by_type(prepared.workflow)["CheckpointLoaderSimple"]["inputs"]["ckpt_name"]
    assert ckpt == "aquarelle-v3.safetensors"


def test_audio_checkpoint_rejected_before_image_fetch(settings):
    calls = []

    def handler(request):
        calls.append(request)
        return png_head_handler(request)

    configured = settings.model_copy(
        update={"runpod_checkpoint_name": "audio-vocoder-v2.safetensors", "runpod_image_transport": "images"}
    )
    builder = PayloadBuilder(configured, make_storage_client(handler))
    with pytest.raises(CheckpointRejected, match="audio-vocoder-v2"):
        builder.build(SOURCE_IMAGE_URL, "sketch", 7)
    assert calls == []


def test_build_inline_transport_uses_storage(settings):
    configured = settings.model_copy(update={"runpod_image_transport": "images"})
    prepared = PayloadBuilder(configured, make_storage_client(png_head_handler)).build(SOURCE_IMAGE_URL, "oil", 5)

    assert prepared.image_transport == "images"
    assert prepared.images == [{"name": "input-image.png", "image": base64.b64encode(b"\x89PNG fake").decode()}]
    assert _nodes_by_type(prepared.workflow)["LoadImage"]["inputs"]["image"] == "input-image.png"
    assert prepared.to_input()["images"] == prepared.images


def test_inline_fetch_falls_back_to_public_url(settings):
    def storage_down(request):
        return httpx.Response(403, text="denied")

    def public(request):
        assert str(request.url) == SOURCE_IMAGE_URL
        return httpx.Response(200, content=b"jpegbytes", headers={"content-type": "image/jpeg"})

    configured = settings.model_copy(update={"runpod_input_image_name": "source"})
    builder = PayloadBuilder(configured, make_storage_client(storage_down), transport=httpx.MockTransport(public))
    assert builder.fetch_inline_image(SOURCE_IMAGE_URL)["name"] == "source.jpg"


def test_inline_fetch_error_mentions_both_failures(settings):
    def storage_down(request):
        return httpx.Response(500, text="boom")

    def public(request):
        return httpx.Response(404)

    builder = PayloadBuilder(settings, make_storage_client(storage_down), transport=httpx.MockTransport(public))
    with pytest.raises(SourceImageError) as exc:
        builder.fetch_inline_image(SOURCE_IMAGE_URL)
    assert "404" in str(exc.value)
    assert "auth fetch failed" in str(exc.value)


def test_template_without_image_slot(settings, tmp_path):
    _write_template(tmp_path, "workflow_api.json", {"1": {"class_type": "KSampler", "inputs": {"seed": 0}}})
    with pytest.raises(NoImageSlot):
        PayloadBuilder(settings, workflow_dir=tmp_path).build(SOURCE_IMAGE_URL, "default", 1)


def test_template_without_seed_slot(settings, tmp_path):
    _write_template(tmp_path, "workflow_api.json", {"1": {"class_type": "LoadImage", "inputs": {"image": "x"}}})
    with pytest.raises(NoSeedSlot):
        PayloadBuilder(settings, workflow_dir=tmp_path).build(SOURCE_IMAGE_URL, "default", 1)


def test_all_seed_keys_are_injected(settings, tmp_path):
    _write_template(
        tmp_path,
        "workflow_api.json",
        {
            "1": {"class_type": "LoadImage", "inputs": {"image": "x"}},
            "2": {"class_type": "RandomNoise", "inputs": {"noise_seed": 0}},
            "3": {"class_type": "KSamplerAdvanced", "inputs": {"seed": 0, "random_seed": 0}},
        },
    )
    prepared = PayloadBuilder(settings, workflow_dir=tmp_path).build(SOURCE_IMAGE_URL, "default", 77)
    assert prepared.workflow["2"]["inputs"]["noise_seed"] == 77
    assert prepared.workflow["3"]["inputs"] == {"seed": 77, "random_seed": 77}
