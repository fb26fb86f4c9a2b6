from typing import Any, Dict, Type, TypeVar, Union

from runpod_client.models import (
    TERMINAL_STATUSES,
    EndpointResponse,
    ErrorResult,
    JobResult,
    JobStatus,
)

R = TypeVar("R", bound=EndpointResponse)


def job_flags(status: Union[str, JobStatus]) -> Dict[str, bool]:
    """Derives the lifecycle flags for a job status. Unknown statuses raise ValueError"""
    status = JobStatus(status)
    return {
        "started": True,
        "completed": status in TERMINAL_STATUSES,
        "succeeded": status == JobStatus.completed,
    }


def normalize_response(
    status: int, status_text: str, body: Any, model: Type[R] = JobResult
) -> Union[ErrorResult, R]:
    """Maps one HTTP outcome onto an ErrorResult or the given response model.

    Status-bearing models (JobResult) get started/completed/succeeded derived
    from the body's status. A malformed 200 body raises.
    """
    if status != 200:
        return ErrorResult(status=status, status_text=status_text)

    fields = dict(body)
    if issubclass(model, JobResult):
        fields.update(job_flags(body["status"]))
    fields["raw_response"] = body
    return model.model_validate(fields)
