from __future__ import annotations

import copy
import json
from typing import Any

from .config import EndpointSpec
from .exceptions import MalformedUpstreamResponse

START_IMAGE_PATH = "requests.0.startImage.mediaId"


def _split(path: str) -> list[str]:
    parts = [p for p in path.split(".") if p]
    if not parts:
        raise ValueError("Field path must not be empty")
    return parts


def read_path(document: Any, path: str) -> Any | None:
    node = document
    for part in _split(path):
        if isinstance(node, dict):
            node = node.get(part)
        elif isinstance(node, list) and part.isdigit() and int(part) < len(node):
            node = node[int(part)]
        else:
            return None
    return node


def _preview(body: Any) -> str:
    if isinstance(body, (bytes, bytearray)):
        return bytes(body[:400]).decode("utf-8", errors="replace")
    try:
        return json.dumps(body)[:400]
    except (TypeError, ValueError):
        return repr(body)[:400]


def extract_media_id(body: Any, endpoint: EndpointSpec, status_code: int = 0) -> str:
    """Read the uploaded media id from the one path *endpoint* declares."""
    if not endpoint.media_id_path:
        raise MalformedUpstreamResponse(
            f"Endpoint {endpoint.service_type}{endpoint.relative_path} does not declare a media id path",
            status_code=status_code,
            raw=_preview(body),
        )
    value = read_path(body, endpoint.media_id_path)
    if not isinstance(value, str) or not value.strip():
        raise MalformedUpstreamResponse(
            f"Upload response has no media id at '{endpoint.media_id_path}'",
            status_code=status_code,
            raw=_preview(body),
        )
    return value.strip()


def set_path(body: dict[str, Any], path: str, value: Any) -> dict[str, Any]:
    """Return a copy of *body* with *value* set at the dotted *path*.

    Numeric segments index into lists; missing objects along the way are created.
    """
    result = copy.deepcopy(body)
    parts = _split(path)
    node: Any = result
    for part, following in zip(parts, parts[1:]):
        if isinstance(node, list):
            if not part.isdigit() or int(part) >= len(node):
                raise ValueError(f"Cannot set field: no list element '{part}' in path '{path}'")
            node = node[int(part)]
            continue
        if not isinstance(node, dict):
            raise ValueError(f"Cannot set field: '{part}' is not inside an object in path '{path}'")
        child = node.get(part)
        if child is None:
            child = [] if following.isdigit() else {}
            node[part] = child
        node = child
    last = parts[-1]
    if not isinstance(node, (dict, list)):
        raise ValueError(f"Cannot set field: parent of '{last}' is not a container in path '{path}'")
    if isinstance(node, list):
        if not last.isdigit() or int(last) >= len(node):
            raise ValueError(f"Cannot set field: no list element '{last}' in path '{path}'")
        node[int(last)] = value
    else:
        node[last] = value
    return result


def bind_media(body: dict[str, Any], media_id: str, path: str) -> dict[str, Any]:
    return set_path(body, path, media_id)


def bind_start_image(body: dict[str, Any], media_id: str) -> dict[str, Any]:
    return bind_media(body, media_id, START_IMAGE_PATH)


def bind_recipe_inputs(
    body: dict[str, Any],
    media: list[tuple[str, str, str]],
) -> dict[str, Any]:
    """Attach ``(media_id, category, caption)`` triples as ``recipeMediaInputs``."""
    result = copy.deepcopy(body)
    result["recipeMediaInputs"] = [
        {
            "caption": caption,
            "mediaInput": {"mediaCategory": category, "mediaGenerationId": media_id},
        }
        for media_id, category, caption in media
    ]
    return result


def remove_path(body: dict[str, Any], path: str) -> dict[str, Any]:
    """Return a copy of *body* without the field at *path*; missing paths are a no-op."""
    result = copy.deepcopy(body)
    parts = _split(path)
    parent = read_path(result, ".".join(parts[:-1])) if len(parts) > 1 else result
    last = parts[-1]
    if isinstance(parent, dict):
        parent.pop(last, None)
    elif isinstance(parent, list) and last.isdigit() and int(last) < len(parent):
        del parent[int(last)]
    return result
