# songjobs/providers/base.py
import abc
from typing import Any, Dict, Optional

from songjobs.schemas import GenerateResult, ProviderHealth, RecordInfo, SongRequest


def clean(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Drop None/empty-string values; providers reject explicit nulls."""
    return {k: v for k, v in obj.items() if v is not None and v != ""}


class MusicProvider(abc.ABC):
    """Capability set every upstream music provider implements.

    generate() must either return a GenerateResult carrying a job id or raise
    ProviderCallError (kind=NO_JOB_ID when the upstream accepted the request
    but no job id could be extracted).
    """

    name: str = "unknown"

    def build_payload(self, request: SongRequest, prompt: str,
                      callback_url: Optional[str] = None) -> Dict[str, Any]:
        # instrumental stays None when the client left it unset
        return {
            "prompt": prompt,
            "title": request.title,
            "style": request.style,
            "instrumental": request.instrumental,
            "model": request.model,
            "callBackUrl": callback_url,
        }

    @abc.abstractmethod
    def generate(self, payload: Dict[str, Any]) -> GenerateResult:
        raise NotImplementedError

    @abc.abstractmethod
    def get_record_info(self, job_id: Optional[str], record_id: Optional[str] = None) -> RecordInfo:
        raise NotImplementedError

    @abc.abstractmethod
    def health(self) -> ProviderHealth:
        raise NotImplementedError

    def close(self):
        pass
