from __future__ import annotations

import os
from dataclasses import dataclass, field, replace

DEFAULT_SERVER_URL = "https://s1.monoklix.com"
DEFAULT_ORIGIN = "https://labs.google"
DEFAULT_REFERER = "https://labs.google/fx/tools/flow"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)
VEO_API_BASE = "https://aisandbox-pa.googleapis.com/v1"

DEFAULT_SITE_KEY = "6LdsFiUsAAAAAIjVDZcuLhaHiDn5nnHVXVRQGeMV"
DEFAULT_PROJECT_ID = "gen-lang-client-0426593366"
DEFAULT_ACTION = "PINHOLE_GENERATE"
ASSESSMENT_BASE_URL = "https://recaptchaenterprise.googleapis.com/v1"

PLACEMENT_BODY = "body"
PLACEMENT_HEADER = "header"
PLACEMENT_NONE = "none"
PLACEMENTS = (PLACEMENT_BODY, PLACEMENT_HEADER, PLACEMENT_NONE)


def env_value(explicit: str | None, env_var: str, default: str | None = None) -> str | None:
    if explicit:
        return explicit.strip()
    value = os.getenv(env_var)
    if value and value.strip():
        return value.strip()
    return default


@dataclass
class UpstreamSettings:
    server_url: str = DEFAULT_SERVER_URL
    origin: str = DEFAULT_ORIGIN
    referer: str = DEFAULT_REFERER
    user_agent: str = DEFAULT_USER_AGENT
    timeout_seconds: float = 30.0
    status_timeout_seconds: float = 10.0
    chunk_size: int = 65536

    @classmethod
    def from_env(cls, server_url: str | None = None) -> UpstreamSettings:
        return cls(server_url=env_value(server_url, "MEDIA_RELAY_SERVER", DEFAULT_SERVER_URL) or DEFAULT_SERVER_URL)


@dataclass
class EndpointSpec:
    """How one upstream endpoint wants its credentials and what it answers with."""

    service_type: str
    relative_path: str
    recaptcha_placement: str = PLACEMENT_HEADER
    recaptcha_header: str = "X-Recaptcha-Token"
    recaptcha_body_path: str = "clientContext.recaptchaToken"
    expected_action: str = DEFAULT_ACTION
    prevalidate: bool = False
    requires_recaptcha: bool = False
    timeout_seconds: float | None = None
    expects_json: bool = True
    upstream_url: str | None = None
    media_id_path: str | None = None
    method: str = "POST"

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        if self.method not in ("GET", "POST"):
            raise ValueError(f"method must be GET or POST; got '{self.method}'")
        if self.recaptcha_placement not in PLACEMENTS:
            raise ValueError(
                f"recaptcha_placement must be one of {', '.join(PLACEMENTS)}; got '{self.recaptcha_placement}'"
            )

    @property
    def key(self) -> tuple[str, str]:
        return (self.service_type.lower(), self.relative_path)

    @property
    def is_status_check(self) -> bool:
        return self.relative_path.rstrip("/").endswith("/status")


def _generation(service: str, path: str, **kwargs) -> EndpointSpec:
    return EndpointSpec(
        service_type=service,
        relative_path=path,
        recaptcha_placement=PLACEMENT_BODY,
        prevalidate=True,
        **kwargs,
    )


def _builtin_endpoints() -> list[EndpointSpec]:
    return [
        _generation("veo", "/generate-t2v", upstream_url=f"{VEO_API_BASE}/video:batchAsyncGenerateVideoText"),
        _generation("veo", "/generate-i2v", upstream_url=f"{VEO_API_BASE}/video:batchAsyncGenerateVideoStartImage"),
        EndpointSpec(
            "veo",
            "/status",
            recaptcha_placement=PLACEMENT_NONE,
            upstream_url=f"{VEO_API_BASE}/video:batchCheckAsyncVideoGenerationStatus",
        ),
        EndpointSpec(
            "veo",
            "/upload",
            recaptcha_placement=PLACEMENT_NONE,
            upstream_url=f"{VEO_API_BASE}:uploadUserImage",
            media_id_path="mediaGenerationId.mediaGenerationId",
        ),
        # Query: ?url=<signed video url>. Answers with the raw video bytes.
        EndpointSpec(
            "veo",
            "/download-video",
            recaptcha_placement=PLACEMENT_NONE,
            timeout_seconds=120.0,
            expects_json=False,
            method="GET",
        ),
        _generation("nanobanana", "/generate"),
        _generation("nanobanana", "/run-recipe"),
        EndpointSpec(
            "nanobanana",
            "/upload",
            recaptcha_placement=PLACEMENT_NONE,
            media_id_path="result.data.json.result.uploadMediaGenerationId",
        ),
        _generation("imagen", "/generate"),
        _generation("imagen", "/run-recipe"),
        EndpointSpec(
            "imagen",
            "/upload",
            recaptcha_placement=PLACEMENT_NONE,
            media_id_path="mediaGenerationId.mediaGenerationId",
        ),
    ]


@dataclass
class EndpointRegistry:
    endpoints: dict[tuple[str, str], EndpointSpec] = field(default_factory=dict)

    @classmethod
    def builtin(cls) -> EndpointRegistry:
        registry = cls()
        for spec in _builtin_endpoints():
            registry.register(spec)
        return registry

    def register(self, spec: EndpointSpec) -> None:
        self.endpoints[spec.key] = spec

    def resolve(self, service_type: str, relative_path: str) -> EndpointSpec:
        found = self.endpoints.get((service_type.lower(), relative_path))
        if found is not None:
            return found
        return EndpointSpec(service_type=service_type.lower(), relative_path=relative_path)

    def override(self, service_type: str, relative_path: str, **changes) -> EndpointSpec:
        updated = replace(self.resolve(service_type, relative_path), **changes)
        self.register(updated)
        return updated

    def list_endpoints(self) -> list[EndpointSpec]:
        return [self.endpoints[k] for k in sorted(self.endpoints)]


@dataclass
class ValidatorSettings:
    project_id: str = DEFAULT_PROJECT_ID
    api_key: str | None = None
    site_key: str = DEFAULT_SITE_KEY
    base_url: str = ASSESSMENT_BASE_URL
    score_threshold: float = 0.3
    timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls, api_key: str | None = None) -> ValidatorSettings:
        return cls(
            project_id=env_value(None, "MEDIA_RELAY_RECAPTCHA_PROJECT", DEFAULT_PROJECT_ID) or DEFAULT_PROJECT_ID,
            api_key=env_value(api_key, "MEDIA_RELAY_RECAPTCHA_API_KEY"),
            site_key=env_value(None, "MEDIA_RELAY_RECAPTCHA_SITE_KEY", DEFAULT_SITE_KEY) or DEFAULT_SITE_KEY,
        )

    @property
    def assessment_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/projects/{self.project_id}/assessments"


@dataclass
class StoreSettings:
    base_url: str | None = None
    api_key: str | None = None
    table: str = "users"
    id_column: str = "id"
    access_token_column: str = "personal_auth_token"
    recaptcha_token_column: str = "recaptcha_token"
    timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> StoreSettings:
        return cls(
            base_url=env_value(None, "MEDIA_RELAY_STORE_URL"),
            api_key=env_value(None, "MEDIA_RELAY_STORE_KEY"),
        )


@dataclass
class DispatcherConfig:
    upstream: UpstreamSettings = field(default_factory=UpstreamSettings)
    endpoints: EndpointRegistry = field(default_factory=EndpointRegistry.builtin)
    cache_ttl_seconds: float = 3000.0
    recaptcha_ttl_seconds: float = 120.0
