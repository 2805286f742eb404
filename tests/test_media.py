import pytest

from media_relay.config import EndpointRegistry
from media_relay.exceptions import MalformedUpstreamResponse
from media_relay.media import (
    bind_recipe_inputs,
    bind_start_image,
    extract_media_id,
    read_path,
    remove_path,
    set_path,
)


def test_extract_media_id_reads_declared_path():
    endpoint = EndpointRegistry.builtin().resolve("veo", "/upload")
    body = {"mediaGenerationId": {"mediaGenerationId": " media-42 "}}
    assert extract_media_id(body, endpoint) == "media-42"


def test_extract_media_id_nanobanana_path():
    endpoint = EndpointRegistry.builtin().resolve("nanobanana", "/upload")
    body = {"result": {"data": {"json": {"result": {"uploadMediaGenerationId": "nb-7"}}}}}
    assert extract_media_id(body, endpoint) == "nb-7"


def test_extract_media_id_missing_is_malformed():
    endpoint = EndpointRegistry.builtin().resolve("veo", "/upload")
    with pytest.raises(MalformedUpstreamResponse) as excinfo:
        extract_media_id({"mediaGenerationId": {}}, endpoint, status_code=200)
    assert excinfo.value.status_code == 200
    assert excinfo.value.raw == '{"mediaGenerationId": {}}'


def test_extract_media_id_requires_declared_path():
    endpoint = EndpointRegistry.builtin().resolve("veo", "/generate-t2v")
    with pytest.raises(MalformedUpstreamResponse):
        extract_media_id({"mediaGenerationId": {"mediaGenerationId": "x"}}, endpoint)


def test_bind_start_image_copies_body():
    body = {"requests": [{"textInput": {"prompt": "dog"}}]}
    bound = bind_start_image(body, "media-42")
    assert bound["requests"][0]["startImage"] == {"mediaId": "media-42"}
    assert "startImage" not in body["requests"][0]


def test_set_path_creates_missing_objects():
    assert set_path({}, "clientContext.recaptchaToken", "rc") == {"clientContext": {"recaptchaToken": "rc"}}


def test_set_path_rejects_missing_list_element():
    with pytest.raises(ValueError):
        set_path({"requests": []}, "requests.0.startImage.mediaId", "m")


def test_set_path_rejects_scalar_parent():
    with pytest.raises(ValueError):
        set_path({"clientContext": "oops"}, "clientContext.recaptchaToken", "rc")


def test_read_path_walks_lists():
    assert read_path({"a": [{"b": "x"}]}, "a.0.b") == "x"
    assert read_path({"a": []}, "a.0.b") is None


def test_bind_recipe_inputs():
    bound = bind_recipe_inputs({"userInstruction": "mix"}, [("m1", "MEDIA_CATEGORY_SUBJECT", "a cat")])
    assert bound["recipeMediaInputs"] == [
        {
            "caption": "a cat",
            "mediaInput": {"mediaCategory": "MEDIA_CATEGORY_SUBJECT", "mediaGenerationId": "m1"},
        }
    ]


def test_remove_path_copies_and_ignores_missing_fields():
    body = {"clientContext": {"tool": "PINHOLE", "recaptchaToken": "rc"}}
    assert remove_path(body, "clientContext.recaptchaToken") == {"clientContext": {"tool": "PINHOLE"}}
    assert body["clientContext"]["recaptchaToken"] == "rc"
    assert remove_path({"a": 1}, "clientContext.recaptchaToken") == {"a": 1}
