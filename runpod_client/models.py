import os
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

PRODUCTION_BASE_URL = "https://api.runpod.ai/v2"
DEVELOPMENT_BASE_URL = "https://dev-api.runpod.ai/v2"

MIN_WAIT_MS = 1000
MAX_WAIT_MS = 90000  # the service caps a single held request at 90s
DEFAULT_TIMEOUT_MS = 300000  # 5 minutes
REQUEST_TIMEOUT_MS = 3000


class JobStatus(str, Enum):
    in_queue = "IN_QUEUE"
    in_progress = "IN_PROGRESS"
    completed = "COMPLETED"
    failed = "FAILED"
    cancelled = "CANCELLED"
    timed_out = "TIMED_OUT"


TERMINAL_STATUSES = frozenset(
    {JobStatus.completed, JobStatus.failed, JobStatus.cancelled, JobStatus.timed_out}
)


class EndpointEnvironment(str, Enum):
    production = "production"
    development = "development"


class ExecutionPolicy(BaseModel):
    """Server-enforced limits, forwarded untouched with the submission"""

    model_config = ConfigDict(populate_by_name=True)

    execution_timeout: Optional[int] = Field(None, alias="executionTimeout")
    ttl: Optional[int] = None


class S3Config(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    access_id: str = Field(alias="accessId")
    access_secret: str = Field(alias="accessSecret")
    bucket_name: str = Field(alias="bucketName")
    endpoint_url: str = Field(alias="endpointUrl")


class EndpointInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    input: Any
    webhook: Optional[str] = None
    s3_config: Optional[S3Config] = Field(None, alias="s3Config")
    policy: Optional[ExecutionPolicy] = None

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class EndpointResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    elapsed_time: float = 0.0
    raw_response: dict = Field(default_factory=dict)


class StreamChunk(BaseModel):
    model_config = ConfigDict(extra="allow")

    output: Any = None


class JobResult(EndpointResponse):
    id: Optional[str] = None
    status: JobStatus
    output: Any = None
    error: Any = None
    execution_time: Optional[int] = Field(None, alias="executionTime")
    delay_time: Optional[int] = Field(None, alias="delayTime")
    stream: List[StreamChunk] = Field(default_factory=list)
    started: bool = False
    completed: bool = False
    succeeded: bool = False


class HealthResult(EndpointResponse):
    jobs: Dict[str, int] = Field(default_factory=dict)
    workers: Dict[str, int] = Field(default_factory=dict)


class PurgeQueueResult(EndpointResponse):
    removed: int = 0
    status: Optional[str] = None


class ErrorResult(BaseModel):
    """A non-200 response. Only the HTTP status line is reliable"""

    status: int
    status_text: str
    started: bool = False
    completed: bool = False
    succeeded: bool = False


class EndpointRequestError(Exception):
    def __init__(self, error: ErrorResult):
        super().__init__(f"HTTP {error.status}: {error.status_text}")
        self.status = error.status
        self.status_text = error.status_text


class ClientConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    api_key: str
    environment: EndpointEnvironment = EndpointEnvironment.production
    base_url: Optional[str] = None
    default_timeout_ms: int = DEFAULT_TIMEOUT_MS
    request_timeout_ms: int = REQUEST_TIMEOUT_MS

    @property
    def resolved_base_url(self) -> str:
        if self.base_url:
            return self.base_url.rstrip("/")
        if self.environment == EndpointEnvironment.development:
            return DEVELOPMENT_BASE_URL
        return PRODUCTION_BASE_URL

    @classmethod
    def from_env(cls, **overrides: Any) -> "ClientConfig":
        """Builds a config from RUNPOD_API_KEY, RUNPOD_ENV and RUNPOD_BASE_URL"""
        values: Dict[str, Any] = {
            "api_key": os.environ.get("RUNPOD_API_KEY"),
            "environment": os.environ.get("RUNPOD_ENV", "production"),
            "base_url": os.environ.get("RUNPOD_BASE_URL") or None,
        }
        values.update(overrides)
        if not values["api_key"]:
            raise ValueError("RUNPOD_API_KEY is not set")
        return cls(**values)
