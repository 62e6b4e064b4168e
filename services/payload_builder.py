"""
ComfyUI workflow payload preparation for RunPod /run.

Loads the style's workflow template, points the image loader at the source
image (URL reference or inline base64 attachment), and injects checkpoint,
seed, latent size and style placeholders.
"""
import base64
import json
import logging
import re
import secrets
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

import httpx

from clients.storage_client import SupabaseStorageClient
from config import Settings, get_style_checkpoint_override, get_workflow_dir
from services.storage import extract_storage_key_from_public_url, get_public_domain
from services.upload_validation import mime_to_extension, validate_mime, validate_size

logger = logging.getLogger(__name__)

DEFAULT_WORKFLOW_FILE = "workflow_api.json"
STYLE_WORKFLOW_FILES = {
    "sketch": "workflow_api_sketch.json",
    "watercolor": "workflow_api_watercolor.json",
    "oil": "workflow_api_oil.json",
}
STYLE_ALIASES = {
    "pencil": "sketch",
    "lineart": "sketch",
    "watercolour": "watercolor",
    "aquarelle": "watercolor",
    "oilpaint": "oil",
    "oilpainting": "oil",
}

SEED_UPPER_BOUND = 2_147_483_647
MAX_SAFE_INTEGER = 2**53 - 1
SEED_KEYS = ("seed", "noise_seed", "random_seed")
STYLE_PLACEHOLDER = "{{style}}"
DEFAULT_INPUT_IMAGE_NAME = "input-image"

IMAGE_LOADER_PATTERN = re.compile(r"(load.?image|image.?load|url.*image|image.*url)")
URL_LOADER_PATTERN = re.compile(r"(url|http)")
SEED_NODE_PATTERN = re.compile(r"(randomnoise|ksampler)")
AUDIO_CHECKPOINT_PATTERN = re.compile(r"(audio|music|vocoder|encodec|mel|wav)", re.IGNORECASE)

TRANSPORT_URL = "url"
TRANSPORT_IMAGES = "images"


class PayloadError(Exception):
    """Template or input problem that makes the job unsubmittable."""


class TemplateError(PayloadError):
    pass


class NoImageSlot(PayloadError):
    pass


class NoSeedSlot(PayloadError):
    pass


class CheckpointRejected(PayloadError):
    pass


class PayloadTooLarge(PayloadError):
    pass


class SourceImageError(PayloadError):
    pass


class InvalidSeed(PayloadError):
    pass


@dataclass
class PreparedPayload:
    workflow: Dict[str, Any]
    seed: int
    image_transport: str
    images: List[Dict[str, str]] = field(default_factory=list)
    comfy_org_api_key: Optional[str] = None

    def to_input(self) -> Dict[str, Any]:
        """The `input` object of a /run request."""
        body: Dict[str, Any] = {"workflow": self.workflow}
        if self.images:
            body["images"] = self.images
        if self.comfy_org_api_key:
            body["comfy_org_api_key"] = self.comfy_org_api_key
        return body


# ── Template resolution ─────────────────────────────────────────────────────


def normalize_style_key(style: str) -> str:
    return re.sub(r"[-_\s]+", "", (style or "").strip().lower())


def resolve_workflow_candidates(style: str) -> List[str]:
    key = normalize_style_key(style)
    key = STYLE_ALIASES.get(key, key)
    preferred = STYLE_WORKFLOW_FILES.get(key)
    if not preferred or preferred == DEFAULT_WORKFLOW_FILE:
        return [DEFAULT_WORKFLOW_FILE]
    return [preferred, DEFAULT_WORKFLOW_FILE]


def load_workflow_template(style: str = "", workflow_dir: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load a fresh copy of the style's template, falling back to the default one.
    A missing file moves on to the next candidate; an unreadable one is fatal.
    """
    directory = Path(workflow_dir) if workflow_dir else get_workflow_dir()
    candidates = resolve_workflow_candidates(style)

    for file_name in candidates:
        path = directory / file_name
        try:
            with open(path, "r", encoding="utf-8") as f:
                workflow = json.load(f)
        except FileNotFoundError:
            continue
        except (OSError, ValueError) as e:
            raise TemplateError(f"Invalid or unreadable JSON in {file_name}: {e}") from e
        if not isinstance(workflow, (dict, list)):
            raise TemplateError(f"Invalid or unreadable JSON in {file_name}: expected an object")
        logger.debug("Loaded workflow template %s for style %r", file_name, style)
        return workflow

    raise TemplateError(f"Failed to read workflow template. Tried: {', '.join(candidates)}")


# ── JSON tree walking ───────────────────────────────────────────────────────


def walk_json(value: Any) -> Iterator[Dict[str, Any]]:
    """Yield every object in a JSON tree, depth first. Does not modify anything."""
    visited = set()
    stack = [value]
    while stack:
        current = stack.pop()
        if not isinstance(current, (dict, list)) or id(current) in visited:
            continue
        visited.add(id(current))
        if isinstance(current, dict):
            yield current
            children = list(current.values())
        else:
            children = list(current)
        stack.extend(reversed(children))


def replace_strings(value: Any, fn: Callable[[str], str]) -> None:
    """Rewrite every string value in the tree in place."""
    visited = set()

    def visit(container):
        if id(container) in visited:
            return
        visited.add(id(container))
        items = container.items() if isinstance(container, dict) else enumerate(container)
        for key, item in list(items):
            if isinstance(item, str):
                container[key] = fn(item)
            elif isinstance(item, (dict, list)):
                visit(item)

    if isinstance(value, (dict, list)):
        visit(value)


def is_node(obj: Dict[str, Any]) -> bool:
    return isinstance(obj.get("class_type"), str) and isinstance(obj.get("inputs"), dict)


def iter_nodes(workflow: Any) -> List[Dict[str, Any]]:
    return [obj for obj in walk_json(workflow) if is_node(obj)]


def class_type(node: Dict[str, Any]) -> str:
    return node["class_type"].lower()


# ── Injection steps ─────────────────────────────────────────────────────────


def resolve_seed(seed: Optional[int] = None) -> int:
    if seed is None:
        return secrets.randbelow(SEED_UPPER_BOUND)
    if isinstance(seed, bool) or not isinstance(seed, int) or seed < 0 or seed > MAX_SAFE_INTEGER:
        raise InvalidSeed("`seed` must be a non-negative safe integer")
    return seed


def find_image_target(nodes: List[Dict[str, Any]]) -> Dict[str, Any]:
    with_image = [n for n in nodes if isinstance(n["inputs"].get("image"), str)]
    for node in with_image:
        if IMAGE_LOADER_PATTERN.search(class_type(node)):
            return node
    if with_image:
        return with_image[0]
    raise NoImageSlot("Unable to find an image loader node with an `image` input")


def parse_image_transport(value: Optional[str]) -> Optional[str]:
    normalized = (value or "").strip().lower()
    if normalized == "url":
        return TRANSPORT_URL
    if normalized in ("images", "base64"):
        return TRANSPORT_IMAGES
    return None


def resolve_image_transport(node: Dict[str, Any], override: Optional[str] = None) -> str:
    explicit = parse_image_transport(override)
    if explicit:
        return explicit
    if URL_LOADER_PATTERN.search(class_type(node)):
        return TRANSPORT_URL
    return TRANSPORT_IMAGES


def resolve_checkpoint_name(style: str, settings: Settings) -> Optional[str]:
    """Per-style override, then RUNPOD_CHECKPOINT_NAME. None leaves the template's own checkpoint."""
    resolved = get_style_checkpoint_override(normalize_style_key(style)) or (
        (settings.runpod_checkpoint_name or "").strip() or None
    )
    if resolved and AUDIO_CHECKPOINT_PATTERN.search(resolved):
        raise CheckpointRejected(
            f"Invalid checkpoint for image workflow: {resolved}. "
            "Please set RUNPOD_CHECKPOINT_NAME to an image checkpoint."
        )
    return resolved


def inject_checkpoint_name(nodes: List[Dict[str, Any]], checkpoint_name: Optional[str]) -> int:
    if not checkpoint_name:
        return 0
    applied = 0
    for node in nodes:
        if isinstance(node["inputs"].get("ckpt_name"), str):
            node["inputs"]["ckpt_name"] = checkpoint_name
            applied += 1
    return applied


def _to_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value == value and value not in (float("inf"), float("-inf")) else None
    if isinstance(value, str):
        match = re.match(r"^\s*[-+]?\d+", value)
        return int(match.group(0)) if match else None
    return None


def normalize_dim(value: Any, fallback: int = 1024) -> int:
    numeric = _to_int(value)
    if numeric is None or numeric < 64:
        return fallback
    return numeric // 8 * 8


def normalize_batch_size(value: Any) -> int:
    numeric = _to_int(value)
    if numeric is None or numeric < 1:
        return 1
    return numeric


def ensure_latent_image_config(nodes: List[Dict[str, Any]]) -> None:
    for node in nodes:
        if class_type(node) != "emptylatentimage":
            continue
        inputs = node["inputs"]
        inputs["width"] = normalize_dim(inputs.get("width"))
        inputs["height"] = normalize_dim(inputs.get("height"))
        inputs["batch_size"] = normalize_batch_size(inputs.get("batch_size"))


def inject_seed(nodes: List[Dict[str, Any]], seed: int) -> int:
    applied = 0
    for node in nodes:
        if not SEED_NODE_PATTERN.search(class_type(node)):
            continue
        for key in SEED_KEYS:
            if key in node["inputs"]:
                node["inputs"][key] = seed
                applied += 1
    if applied == 0:
        raise NoSeedSlot("Unable to find RandomNoise/KSampler node to inject seed")
    return applied


def inject_style_placeholders(workflow: Any, style: str) -> None:
    if not (style or "").strip():
        return
    replace_strings(
        workflow,
        lambda s: s.replace(STYLE_PLACEHOLDER, style) if STYLE_PLACEHOLDER in s else s,
    )


def ensure_video_output_name(nodes: List[Dict[str, Any]], style: str, now_ms: Optional[int] = None) -> None:
    video_node = next((n for n in nodes if class_type(n) == "vhs_videocombine"), None)
    if video_node is None:
        return
    existing = video_node["inputs"].get("filename_prefix")
    if isinstance(existing, str) and existing.strip():
        return
    slug = re.sub(r"[^a-zA-Z0-9\-_]", "-", (style or "").strip()).lower() or "style"
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    video_node["inputs"]["filename_prefix"] = f"runpod-{slug}-{stamp}"


def ensure_request_size_limit(request_body: str, max_bytes: int) -> int:
    actual = len(request_body.encode("utf-8"))
    if actual > max_bytes:
        raise PayloadTooLarge(
            f"RunPod /run payload is too large ({actual} bytes > {max_bytes}). "
            "Reduce image size or set RUNPOD_IMAGE_TRANSPORT=url."
        )
    return actual


def resolve_comfy_org_api_key(settings: Settings) -> Optional[str]:
    for value in (settings.runpod_comfy_org_api_key, settings.comfy_org_api_key):
        if value and value.strip():
            return value.strip()
    return None


# ── Builder ─────────────────────────────────────────────────────────────────


class PayloadBuilder:
    """Builds the `input` object for a /run submission."""

    def __init__(
        self,
        settings: Settings,
        storage_client: Optional[SupabaseStorageClient] = None,
        transport: Optional[httpx.BaseTransport] = None,
        workflow_dir: Optional[Path] = None,
    ):
        self.settings = settings
        self.storage_client = storage_client
        self.transport = transport
        self.workflow_dir = workflow_dir

    def _download_from_storage(self, image_url: str):
        if self.storage_client is None:
            raise SourceImageError("storage client is not configured")
        key = extract_storage_key_from_public_url(image_url, get_public_domain(self.settings))
        return self.storage_client.download_object(key)

    def fetch_inline_image(self, image_url: str) -> Dict[str, str]:
        """
        Fetch source bytes for the `images` attachment.
        Authenticated storage download first, then a plain GET of the public URL.
        """
        body = None
        content_type = ""
        storage_error = None
        try:
            body, content_type = self._download_from_storage(image_url)
        except Exception as e:
            storage_error = e
            logger.info("Authenticated storage fetch failed, falling back to public URL: %s", e)

        if body is None:
            with httpx.Client(verify=self.settings.verify_tls, transport=self.transport) as client:
                r = client.get(image_url)
            if r.status_code >= 400:
                hint = f"; auth fetch failed: {storage_error}" if storage_error else ""
                raise SourceImageError(
                    f"Failed to load source image for RunPod images input: "
                    f"{r.status_code} {r.reason_phrase}{hint}"
                )
            body = r.content
            content_type = r.headers.get("content-type", "")

        validate_size(len(body))
        mime = validate_mime(content_type)
        name = (self.settings.runpod_input_image_name or "").strip() or DEFAULT_INPUT_IMAGE_NAME
        if "." not in name:
            name = f"{name}.{mime_to_extension(mime)}"
        return {"name": name, "image": base64.b64encode(body).decode("ascii")}

    def build(self, image_url: str, style: str, seed: Optional[int] = None) -> PreparedPayload:
        if not (image_url or "").strip():
            raise PayloadError("`imageUrl` is required")

        workflow = load_workflow_template(style, self.workflow_dir)
        nodes = iter_nodes(workflow)
        if not nodes:
            raise TemplateError("No workflow nodes found in workflow template")

        resolved_seed = resolve_seed(seed)
        checkpoint_name = resolve_checkpoint_name(style, self.settings)
        target = find_image_target(nodes)
        transport = resolve_image_transport(target, self.settings.runpod_image_transport)
        images: List[Dict[str, str]] = []

        if transport == TRANSPORT_IMAGES:
            attachment = self.fetch_inline_image(image_url)
            target["inputs"]["image"] = attachment["name"]
            images.append(attachment)
        else:
            target["inputs"]["image"] = image_url

        inject_checkpoint_name(nodes, checkpoint_name)
        ensure_latent_image_config(nodes)
        inject_seed(nodes, resolved_seed)
        inject_style_placeholders(workflow, style)
        ensure_video_output_name(nodes, style)

        logger.info(
            "Prepared workflow for style %r (seed=%s, transport=%s, nodes=%d)",
            style, resolved_seed, transport, len(nodes),
        )
        return PreparedPayload(
            workflow=workflow,
            seed=resolved_seed,
            image_transport=transport,
            images=images,
            comfy_org_api_key=resolve_comfy_org_api_key(self.settings),
        )
