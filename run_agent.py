#!/usr/bin/env python3
"""
run_agent.py

Wires one agent run end to end:
  settings -> operator (+ connect) -> model client -> GUIAgent.run() -> store

- AgentSettings.from_env(): every knob from env (.env supported), CLI overrides.
- build_operator(): local_computer | local_browser | remote_computer | remote_browser.
  A connect failure is reported as ERROR before any iteration runs.
- fold_attachments(): text attachments appended to the instruction, images
  passed to the model on the first turn.
- AgentManager: holds the current agent; run / pause / resume / stop /
  clear_history routes for a front end (or the CLI below).

Usage:
  python run_agent.py "open openrouter.ai and find the pricing page" --operator local_browser
"""

from __future__ import annotations

import argparse
import base64
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from action_space import OperatorConnectionError, RetryPolicy
from agent_env import _env_bool, _env_int, _env_str, setup_logger
from agent_store import AgentStore, AppState
from gui_agent import GUIAgent, GUIAgentData, StatusEnum
from model_client import VLMClient, build_system_prompt
from overlay import ClickMarker, OverlayController
from remote_operator import RemoteBrowserOperator, RemoteComputerOperator
from webview_operator import EmbeddedBrowserOperator
from webview_session import BrowserHost, SurfaceSession

logger = setup_logger("RunAgent", "AGENT_LOG_LEVEL")

OPERATORS = ("local_computer", "local_browser", "remote_computer", "remote_browser")

MAX_FILE_CONTEXT_CHARS = 50000
TRUNCATION_MARKER = "\n\n[Content truncated due to length...]"

CONNECT_ERROR_MESSAGES = {
    "local_browser": "Failed to connect to embedded browser. Please ensure the browser panel is loaded and try again.",
    "remote_computer": "Failed to create remote computer session. Please check the remote operator service and try again.",
    "remote_browser": "Failed to create remote browser session. Please check the remote operator service and try again.",
    "local_computer": "Failed to initialize the local computer operator.",
}

_IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp"}


# -----------------------------------------------------------------------------
# Settings
# -----------------------------------------------------------------------------
@dataclass
class AgentSettings:
    operator: str = "local_computer"
    vlm_base_url: str = ""
    vlm_api_key: str = ""
    vlm_model_name: str = ""
    max_loop_count: int = 100
    loop_interval_ms: int = 0
    language: str = "en"
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    cdp_url: str = ""
    browser_headless: bool = False
    start_url: str = ""
    remote_base_url: str = ""
    remote_auth_token: str = ""

    @classmethod
    def from_env(cls) -> "AgentSettings":
        operator = _env_str("AGENT_OPERATOR", "local_computer").lower()
        if operator not in OPERATORS:
            logger.warning("[settings] unknown AGENT_OPERATOR=%r, using local_computer", operator)
            operator = "local_computer"
        return cls(
            operator=operator,
            vlm_base_url=_env_str("VLM_BASE_URL", ""),
            vlm_api_key=_env_str("VLM_API_KEY", ""),
            vlm_model_name=_env_str("VLM_MODEL_NAME", ""),
            max_loop_count=_env_int("AGENT_MAX_LOOP_COUNT", 100),
            loop_interval_ms=_env_int("AGENT_LOOP_INTERVAL_MS", 0),
            language=_env_str("AGENT_LANGUAGE", "en").lower(),
            retry=RetryPolicy(
                model=_env_int("AGENT_RETRY_MODEL", 5),
                screenshot=_env_int("AGENT_RETRY_SCREENSHOT", 5),
                execute=_env_int("AGENT_RETRY_EXECUTE", 1),
            ),
            cdp_url=_env_str("BROWSER_CDP_URL", ""),
            browser_headless=_env_bool("BROWSER_HEADLESS", False),
            start_url=_env_str("BROWSER_START_URL", ""),
            remote_base_url=_env_str("REMOTE_OPERATOR_URL", ""),
            remote_auth_token=_env_str("REMOTE_AUTH_TOKEN", ""),
        )


# -----------------------------------------------------------------------------
# Attachments
# -----------------------------------------------------------------------------
def fold_attachments(instructions: str, attachments: Optional[List[Dict[str, Any]]]) -> Tuple[str, List[str]]:
    """Append text attachments to the instruction; collect image base64 payloads."""
    attachments = attachments or []
    texts = [a for a in attachments if a.get("type") == "text"]
    images = [str(a.get("content") or "") for a in attachments if a.get("type") == "image"]

    folded = instructions
    if texts:
        file_context = "\n\n".join(str(a.get("content") or "") for a in texts)
        if len(file_context) > MAX_FILE_CONTEXT_CHARS:
            file_context = file_context[:MAX_FILE_CONTEXT_CHARS] + TRUNCATION_MARKER
        folded = f"{instructions}\n\n## Attached Files\n{file_context}"

    logger.info("[attachments] text=%d images=%d folded_chars=%d", len(texts), len(images), len(folded))
    return folded, [i for i in images if i]


def load_attachment(path: str) -> Dict[str, Any]:
    p = Path(path)
    if p.suffix.lower() in _IMAGE_SUFFIXES:
        return {"type": "image", "file_name": p.name, "content": base64.b64encode(p.read_bytes()).decode("utf-8")}
    return {"type": "text", "file_name": p.name, "content": p.read_text(encoding="utf-8", errors="replace")}


# -----------------------------------------------------------------------------
# Operators
# -----------------------------------------------------------------------------
@dataclass
class OperatorHandle:
    operator: Any
    kind: str
    cleanup: Callable[[], None] = lambda: None


def build_operator(settings: AgentSettings, overlays: OverlayController) -> OperatorHandle:
    """Create (and connect) the operator for settings.operator.

    Raises OperatorConnectionError when the target surface or remote session
    cannot be reached.
    """
    kind = settings.operator

    if kind == "local_browser":
        host = BrowserHost(cdp_url=settings.cdp_url, headless=settings.browser_headless, start_url=settings.start_url)
        try:
            browser = host.start()
        except Exception as e:
            raise OperatorConnectionError(f"Cannot start or reach browser: {e}") from e
        op = EmbeddedBrowserOperator(SurfaceSession(browser), overlays=overlays)
        try:
            op.connect()
        except OperatorConnectionError:
            host.stop()
            raise

        def _cleanup() -> None:
            op.close()
            host.stop()

        return OperatorHandle(op, kind, _cleanup)

    if kind in ("remote_computer", "remote_browser"):
        cls = RemoteComputerOperator if kind == "remote_computer" else RemoteBrowserOperator
        try:
            op = cls.create(settings.remote_base_url, auth_token=settings.remote_auth_token or None)
        except ValueError as e:
            raise OperatorConnectionError(str(e)) from e
        return OperatorHandle(op, kind, op.close)

    # Imported here so the other operators work on machines without a display.
    from desktop_operator import LocalDesktopOperator

    op = LocalDesktopOperator(overlays=overlays)
    return OperatorHandle(op, "local_computer", op.close)


def before_agent_run(kind: str, marker: Optional[ClickMarker]) -> None:
    if kind == "local_computer" and marker is not None:
        marker.show()


def after_agent_run(kind: str, marker: Optional[ClickMarker]) -> None:
    if kind == "local_computer" and marker is not None:
        marker.hide()


# -----------------------------------------------------------------------------
# Run
# -----------------------------------------------------------------------------
def run_agent(
    store: AgentStore,
    settings: AgentSettings,
    *,
    manager: Optional["AgentManager"] = None,
    model: Any = None,
    operator_factory: Callable[[AgentSettings, OverlayController], OperatorHandle] = build_operator,
    overlays: Optional[OverlayController] = None,
    marker: Optional[ClickMarker] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    state = store.get_state()
    instructions = state.instructions
    if not instructions:
        raise ValueError("instructions is required")

    logger.info("[run] operator=%s", settings.operator)
    overlays = overlays or OverlayController()
    if marker is not None:
        overlays.register(marker)

    try:
        handle = operator_factory(settings, overlays)
    except OperatorConnectionError as e:
        logger.error("[connect] %s operator failed: %s", settings.operator, e)
        store.set_state(
            status=StatusEnum.ERROR,
            error_msg=CONNECT_ERROR_MESSAGES.get(settings.operator, str(e)),
        )
        return

    operator = handle.operator
    try:
        if model is None:
            model = VLMClient(
                base_url=settings.vlm_base_url,
                api_key=settings.vlm_api_key,
                model=settings.vlm_model_name,
                system_prompt=build_system_prompt(getattr(operator, "MANUAL", None), settings.language),
            )

        auth_headers: Dict[str, str] = {}
        if handle.kind.startswith("remote_") and settings.remote_auth_token:
            auth_headers["Authorization"] = f"Bearer {settings.remote_auth_token}"

        agent: Optional[GUIAgent] = None

        def handle_data(data: GUIAgentData) -> None:
            current = store.get_state()
            logger.info("[on_data] status=%s turns=%d", data.status.value, len(data.conversations))
            if (
                handle.kind == "local_computer"
                and marker is not None
                and data.conversations
                and agent is not None
                and not agent.state.cancelled
            ):
                res = data.conversations[-1].execute_result
                if res is not None and res.start_x is not None and res.start_y is not None:
                    marker.mark(res.start_x, res.start_y)

            changes: Dict[str, Any] = {
                "status": data.status,
                "messages": list(current.messages) + list(data.conversations),
            }
            if data.error_msg:
                changes["error_msg"] = data.error_msg
            store.set_state(**changes)

        agent = GUIAgent(
            model,
            operator,
            on_data=handle_data,
            retry=settings.retry,
            max_loop_count=settings.max_loop_count,
            loop_interval_ms=settings.loop_interval_ms,
            sleep=sleep,
        )
        if manager is not None:
            manager.set_agent(agent)

        folded, images = fold_attachments(instructions, state.attachments)

        before_agent_run(handle.kind, marker)
        t0 = time.time()
        try:
            agent.run(folded, state.session_history_messages, auth_headers or None, images or None)
        except (ValueError, RuntimeError) as e:
            logger.error("[run] agent loop error: %s", e)
            store.set_state(status=StatusEnum.ERROR, error_msg=str(e))
        logger.info("[run] total cost %.1fs", time.time() - t0)

        # Attachments belong to a single run.
        store.set_state(attachments=[])
        after_agent_run(handle.kind, marker)
    finally:
        try:
            handle.cleanup()
        except Exception as e:
            logger.warning("[run] operator cleanup failed: %s", e)


# -----------------------------------------------------------------------------
# Manager
# -----------------------------------------------------------------------------
class AgentManager:
    def __init__(self, store: Optional[AgentStore] = None, settings: Optional[AgentSettings] = None, **run_kwargs: Any):
        self.store = store or AgentStore()
        self.settings = settings or AgentSettings.from_env()
        self.run_kwargs = run_kwargs
        self._agent: Optional[GUIAgent] = None
        self._route_lock = threading.Lock()

    def set_agent(self, agent: GUIAgent) -> None:
        self._agent = agent

    def get_agent(self) -> Optional[GUIAgent]:
        return self._agent

    def clear_agent(self) -> None:
        self._agent = None

    def run_agent_route(self) -> bool:
        with self._route_lock:
            if self.store.get_state().thinking:
                logger.warning("[manager] run rejected, agent already thinking")
                return False
            self.store.set_state(thinking=True, error_msg=None)
        try:
            run_agent(self.store, self.settings, manager=self, **self.run_kwargs)
        finally:
            self.store.set_state(thinking=False)
        return True

    def pause_run(self) -> None:
        if self._agent is not None:
            self._agent.pause()
            self.store.set_state(thinking=False)

    def resume_run(self) -> None:
        if self._agent is not None:
            self._agent.resume()
            self.store.set_state(thinking=False)

    def stop_run(self) -> None:
        self.store.set_state(status=StatusEnum.END, thinking=False)
        if self._agent is not None:
            self._agent.resume()
            self._agent.stop()
        marker = self.run_kwargs.get("marker")
        if marker is not None:
            marker.hide()

    def clear_history(self) -> None:
        self.store.set_state(
            status=StatusEnum.END,
            messages=[],
            session_history_messages=[],
            thinking=False,
            error_msg=None,
            instructions="",
            attachments=[],
        )


# -----------------------------------------------------------------------------
# CLI
# -----------------------------------------------------------------------------
def main() -> int:
    env = AgentSettings.from_env()

    ap = argparse.ArgumentParser()
    ap.add_argument("instruction")
    ap.add_argument("--operator", choices=OPERATORS, default=env.operator)
    ap.add_argument("--max-loop-count", type=int, default=env.max_loop_count)
    ap.add_argument("--loop-interval-ms", type=int, default=env.loop_interval_ms)
    ap.add_argument("--language", choices=("en", "zh"), default=env.language if env.language in ("en", "zh") else "en")
    ap.add_argument("--cdp-url", default=env.cdp_url)
    ap.add_argument("--headless", action="store_true", default=env.browser_headless)
    ap.add_argument("--start-url", default=env.start_url)
    ap.add_argument("--remote-url", default=env.remote_base_url)
    ap.add_argument("--attach", action="append", default=[], help="file to attach (text or image), repeatable")
    ap.add_argument("--no-marker", action="store_true", help="disable the on-screen click marker")
    args = ap.parse_args()

    settings = AgentSettings(
        operator=args.operator,
        vlm_base_url=env.vlm_base_url,
        vlm_api_key=env.vlm_api_key,
        vlm_model_name=env.vlm_model_name,
        max_loop_count=args.max_loop_count,
        loop_interval_ms=args.loop_interval_ms,
        language=args.language,
        retry=env.retry,
        cdp_url=args.cdp_url,
        browser_headless=args.headless,
        start_url=args.start_url,
        remote_base_url=args.remote_url,
        remote_auth_token=env.remote_auth_token,
    )

    store = AgentStore(AppState(instructions=args.instruction, attachments=[load_attachment(p) for p in args.attach]))
    marker = None if args.no_marker else ClickMarker(enabled=settings.operator == "local_computer")
    manager = AgentManager(store, settings, marker=marker)

    worker = threading.Thread(target=manager.run_agent_route, name="gui-agent", daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(timeout=0.2)
    except KeyboardInterrupt:
        logger.warning("[run] interrupted, stopping agent")
        manager.stop_run()
        worker.join()

    final = store.get_state()
    logger.info("[run] final status=%s turns=%d", final.status.value, len(final.messages))
    if final.error_msg:
        logger.error("[run] error: %s", final.error_msg)
    return 0 if final.status in (StatusEnum.END, StatusEnum.CALL_USER, StatusEnum.USER_STOPPED) else 1


if __name__ == "__main__":
    sys.exit(main())
