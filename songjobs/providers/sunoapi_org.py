# songjobs/providers/sunoapi_org.py
"""
SunoAPI.org provider.

- POST {base}{generate_path}   -> {"code": 200, "msg": "success", "data": {"taskId": "..."}}
- GET  {base}{record_info_path}?taskId=...  -> task state + generated tracks
- GET  {base}{status_path}?taskId=...       -> fallback status endpoint

The API reports many failures as HTTP 200 with a non-200 envelope code, so
both are checked.
"""

from typing import Any, Dict, List, Optional, Tuple

import httpx

from songjobs import monitoring
from songjobs.config import Settings
from songjobs.errors import ErrorType, ProviderCallError
from songjobs.providers.base import MusicProvider, clean
from songjobs.providers.parsing import extract_job_id, extract_record_id, normalize_record_info
from songjobs.schemas import GenerateResult, ProviderHealth, RecordInfo, SongRequest

HEALTH_TIMEOUT = 3.0


def _decode(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text or None


def _envelope_error(data: Any) -> Optional[Tuple[Any, str]]:
    """Return (code, msg) when a 2xx body carries an error envelope."""
    if isinstance(data, dict) and "code" in data and data.get("code") not in (200, "200"):
        return data.get("code"), str(data.get("msg") or "Generation error")
    return None


class SunoApiOrgProvider(MusicProvider):
    name = "sunoapi_org"

    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None):
        self.settings = settings
        if not settings.suno_api_key:
            monitoring.logger.warning("SUNOAPI_ORG_API_KEY is not set; generation will fail with 401")
        headers = {"Content-Type": "application/json"}
        if settings.suno_api_key:
            headers["Authorization"] = f"Bearer {settings.suno_api_key}"
        self._client = client or httpx.Client(base_url=settings.suno_base_url, headers=headers)

    def build_payload(self, request: SongRequest, prompt: str,
                      callback_url: Optional[str] = None) -> Dict[str, Any]:
        payload = super().build_payload(request, prompt, callback_url or self.settings.callback_url)
        payload["model"] = request.model or self.settings.suno_model
        payload["customMode"] = False
        return payload

    def generate(self, payload: Dict[str, Any]) -> GenerateResult:
        if not self.settings.suno_api_key:
            raise ProviderCallError("missing_suno_api_key", status=401)
        body = clean(payload)
        if "callBackUrl" not in body:
            monitoring.logger.warning("No callback URL configured; provider may reject the request")
        try:
            resp = self._client.post(
                self.settings.suno_generate_path, json=body,
                timeout=self.settings.dispatch_timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise ProviderCallError(f"suno_timeout: {e}", kind=ErrorType.TIMEOUT) from e
        except httpx.HTTPError as e:
            raise ProviderCallError(f"suno_network_error: {e}") from e

        data = _decode(resp)
        if resp.status_code >= 400:
            msg = data.get("msg") if isinstance(data, dict) else None
            raise ProviderCallError(
                msg or f"suno_generate_failed: HTTP {resp.status_code}",
                status=resp.status_code,
                code=data.get("code") if isinstance(data, dict) else None,
                raw=data,
            )
        env_err = _envelope_error(data)
        if env_err:
            code, msg = env_err
            raise ProviderCallError(msg, status=resp.status_code, code=code, raw=data)

        job_id = extract_job_id(data)
        if not job_id:
            monitoring.logger.error("No job id in generate response", extra={"raw": str(data)[:800]})
            raise ProviderCallError(
                "No job ID returned from provider", status=resp.status_code,
                kind=ErrorType.NO_JOB_ID, raw=data,
            )
        monitoring.logger.info("Provider accepted generation", extra={"job_id": job_id})
        return GenerateResult(job_id=job_id, record_id=extract_record_id(data), raw=data)

    def _lookups(self, job_id: Optional[str], record_id: Optional[str]) -> List[Tuple[str, Dict[str, str]]]:
        attempts = []
        if job_id:
            attempts.append((self.settings.suno_record_info_path, {"taskId": job_id}))
            attempts.append((self.settings.suno_status_path, {"taskId": job_id}))
        if record_id:
            attempts.append((self.settings.suno_record_info_path, {"id": record_id}))
        return attempts

    def get_record_info(self, job_id: Optional[str], record_id: Optional[str] = None) -> RecordInfo:
        last_error: Optional[ProviderCallError] = None
        for path, params in self._lookups(job_id, record_id):
            tried = f"{path}?{'&'.join(f'{k}={v}' for k, v in params.items())}"
            try:
                resp = self._client.get(path, params=params, timeout=self.settings.poll_timeout_seconds)
            except httpx.TimeoutException as e:
                last_error = ProviderCallError(f"suno_timeout: {e}", kind=ErrorType.TIMEOUT)
                continue
            except httpx.HTTPError as e:
                last_error = ProviderCallError(f"suno_network_error: {e}")
                continue
            data = _decode(resp)
            if resp.status_code >= 400:
                last_error = ProviderCallError(
                    f"suno_recordinfo_failed: HTTP {resp.status_code}", status=resp.status_code, raw=data,
                )
                continue
            env_err = _envelope_error(data)
            if env_err:
                last_error = ProviderCallError(env_err[1], status=resp.status_code, code=env_err[0], raw=data)
                continue
            monitoring.logger.debug("Status resolved", extra={"via": tried})
            return normalize_record_info(data, tried=tried)

        if last_error is None:
            last_error = ProviderCallError("No job or record id to look up", status=400)
        raise last_error

    def health(self) -> ProviderHealth:
        try:
            resp = self._client.options(self.settings.suno_generate_path, timeout=HEALTH_TIMEOUT)
        except httpx.HTTPError as e:
            return ProviderHealth(ok=False, status=0, message=f"network_error: {e}", provider=self.name)
        if resp.status_code in (401, 403):
            return ProviderHealth(
                ok=False, status=401, provider=self.name,
                message="Authentication failed. Check SUNOAPI_ORG_API_KEY.",
            )
        ok = 200 <= resp.status_code < 400
        return ProviderHealth(
            ok=ok, status=resp.status_code, provider=self.name,
            message="SunoAPI.org is responding" if ok else f"HTTP {resp.status_code}",
        )

    def close(self):
        self._client.close()
