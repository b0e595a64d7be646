"""
remote_operator.py

Operators backed by a remote sandbox proxy (a computer or a browser living on
another machine). The proxy owns capture and input; we only speak HTTP:

  POST   /v1/sessions                  {"kind"}                        -> {"session_id"}
  GET    /v1/sessions/{id}/screenshot                                  -> {"base64", "scaleFactor", "width", "height"}
  POST   /v1/sessions/{id}/execute     {"action_type", "action_inputs"} -> {"events"}
  DELETE /v1/sessions/{id}

HTTP failures surface as requests.HTTPError so the loop's retry policy
applies. Only session creation is fatal (OperatorConnectionError).
"""

from __future__ import annotations

import base64
from typing import Any, Dict, Optional

import requests

from action_space import BROWSER_MANUAL, MANUAL, Action, ExecuteResult, OperatorConnectionError, ScreenshotResult
from agent_env import _env_int, setup_logger

logger = setup_logger("RemoteOperator", "REMOTE_LOG_LEVEL")


class RemoteOperatorClient:
    def __init__(
        self,
        base_url: str,
        *,
        auth_token: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout_s: Optional[int] = None,
        http: Any = None,
    ):
        if not base_url:
            raise ValueError("base_url is required for the remote operator")
        self.base_url = base_url.rstrip("/")
        self.headers: Dict[str, str] = dict(headers or {})
        if auth_token:
            self.headers.setdefault("Authorization", f"Bearer {auth_token}")
        self.timeout_s = timeout_s if timeout_s is not None else _env_int("REMOTE_TIMEOUT_S", 60)
        self.http = http or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        r = self.http.request(method, self._url(path), json=payload, headers=self.headers, timeout=self.timeout_s)
        r.raise_for_status()
        if not r.content:
            return {}
        return r.json()

    def create_session(self, kind: str) -> str:
        try:
            data = self._request("POST", "/v1/sessions", {"kind": kind})
        except requests.RequestException as e:
            raise OperatorConnectionError(f"Cannot create remote {kind} session: {e}") from e
        session_id = str(data.get("session_id") or "")
        if not session_id:
            raise OperatorConnectionError(f"Remote proxy returned no session_id for {kind}")
        logger.info("[connect] remote %s session=%s", kind, session_id)
        return session_id

    def screenshot(self, session_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/v1/sessions/{session_id}/screenshot")

    def execute(self, session_id: str, action_type: str, action_inputs: Dict[str, str]) -> Dict[str, Any]:
        return self._request(
            "POST",
            f"/v1/sessions/{session_id}/execute",
            {"action_type": action_type, "action_inputs": action_inputs},
        )

    def delete_session(self, session_id: str) -> None:
        self._request("DELETE", f"/v1/sessions/{session_id}")


class _RemoteOperator:
    KIND = ""
    MANUAL = MANUAL

    def __init__(self, client: RemoteOperatorClient, session_id: str):
        self.client = client
        self.session_id = session_id

    @classmethod
    def create(cls, base_url: str, *, auth_token: Optional[str] = None, **kwargs: Any):
        client = RemoteOperatorClient(base_url, auth_token=auth_token, **kwargs)
        return cls(client, client.create_session(cls.KIND))

    def screenshot(self) -> ScreenshotResult:
        data = self.client.screenshot(self.session_id)
        b64 = data.get("base64") or ""
        if not b64:
            raise RuntimeError("remote screenshot returned no image")
        return ScreenshotResult(
            image_bytes=base64.b64decode(b64),
            scale_factor=float(data.get("scaleFactor") or 1.0),
            width=int(data.get("width") or 0),
            height=int(data.get("height") or 0),
        )

    def execute(self, action: Action) -> ExecuteResult:
        logger.info("[execute] remote %s %s", self.KIND, action.action_type)
        data = self.client.execute(self.session_id, action.action_type, dict(action.action_inputs))
        return ExecuteResult(action_type=action.action_type, events=list(data.get("events") or []))

    def close(self) -> None:
        try:
            self.client.delete_session(self.session_id)
            logger.info("[connect] remote session %s released", self.session_id)
        except requests.RequestException as e:
            logger.warning("[connect] remote session %s release failed: %s", self.session_id, e)


class RemoteComputerOperator(_RemoteOperator):
    KIND = "computer"


class RemoteBrowserOperator(_RemoteOperator):
    KIND = "browser"
    MANUAL = BROWSER_MANUAL
