"""
gui_agent.py

The observe -> predict -> act loop.

Each iteration runs named phases in order:
  capture  operator.screenshot()                 (retry budget: screenshot)
  infer    model.predict(...)                    (retry budget: model)
  parse    parser(prediction) -> Action          (shares the model budget)
  execute  operator.execute(action)              (retry budget: execute)
  settle   sleep loop_interval_ms

Termination, in priority order:
  1. stop() observed at any phase boundary       -> END
  2. terminal prediction                         -> END / CALL_USER / USER_STOPPED / ERROR
  3. max_loop_count reached                      -> END
  4. a phase exhausts its retries                -> ERROR (JSON payload in error_msg)

run() itself only raises for caller errors (empty instruction, run already in
progress). pause()/resume()/stop() are safe from any thread.
"""

from __future__ import annotations

import json
import threading
import time
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from action_space import (
    Action,
    ActionType,
    ExecuteResult,
    FatalRunError,
    Operator,
    RetryPolicy,
    ScreenshotResult,
    TransientPhaseError,
    parse_prediction,
)
from agent_env import setup_logger

logger = setup_logger("GUIAgent", "AGENT_LOG_LEVEL")

ENV_ERROR_MESSAGE = "environment error reported by model"


class StatusEnum(str, Enum):
    INIT = "init"
    RUNNING = "running"
    PAUSE = "pause"
    CALL_USER = "call_user"
    USER_STOPPED = "user_stopped"
    END = "end"
    ERROR = "error"


TERMINAL_STATUS = {
    ActionType.FINISHED: StatusEnum.END,
    ActionType.CALL_USER: StatusEnum.CALL_USER,
    ActionType.USER_STOP: StatusEnum.USER_STOPPED,
    ActionType.ERROR_ENV: StatusEnum.ERROR,
}


@dataclass
class LoopState:
    iteration: int = 0
    status: StatusEnum = StatusEnum.INIT
    cancelled: bool = False


@dataclass
class Turn:
    iteration: int
    screenshot_base64: str
    scale_factor: float
    screen_size: Dict[str, int]
    prediction: str
    action: Optional[Action]
    execute_result: Optional[ExecuteResult] = None
    timing_ms: int = 0


@dataclass
class GUIAgentData:
    """One progress emission. `conversations` holds only the turns added
    since the previous emission."""

    status: StatusEnum
    conversations: List[Turn] = field(default_factory=list)
    error_msg: Optional[str] = None


class _Cancelled(Exception):
    pass


def error_payload(cause: BaseException, status: Any = None) -> str:
    if status is None:
        status = getattr(cause, "status_code", None) or getattr(cause, "status", None)
    return json.dumps(
        {
            "status": status,
            "message": str(cause),
            "stack": "".join(traceback.format_exception(type(cause), cause, cause.__traceback__)),
        }
    )


class GUIAgent:
    def __init__(
        self,
        model: Any,
        operator: Operator,
        *,
        parser: Callable[[str], Optional[Action]] = parse_prediction,
        on_data: Optional[Callable[[GUIAgentData], None]] = None,
        retry: RetryPolicy = RetryPolicy(),
        max_loop_count: int = 100,
        loop_interval_ms: int = 0,
        max_screenshots: int = 5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.model = model
        self.operator = operator
        self.parser = parser
        self.on_data = on_data
        self.retry = retry
        self.max_loop_count = int(max_loop_count)
        self.loop_interval_ms = int(loop_interval_ms)
        self.max_screenshots = max(1, int(max_screenshots))
        self._sleep = sleep

        self.state = LoopState()
        self.conversations: List[Turn] = []
        self.error_msg: Optional[str] = None

        self._run_lock = threading.Lock()
        self._in_progress = False
        self._cancel = threading.Event()
        self._resumed = threading.Event()
        self._resumed.set()

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------
    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def pause(self) -> None:
        logger.info("[loop] pause requested")
        self._resumed.clear()

    def resume(self) -> None:
        logger.info("[loop] resume requested")
        self._resumed.set()

    def stop(self) -> None:
        logger.info("[loop] stop requested")
        self._cancel.set()
        self.state.cancelled = True
        self._resumed.set()

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------
    def run(
        self,
        instruction: str,
        history: Optional[Sequence[Dict[str, Any]]] = None,
        auth_headers: Optional[Dict[str, str]] = None,
        image_attachments: Optional[Sequence[str]] = None,
    ) -> None:
        if not instruction or not instruction.strip():
            raise ValueError("instruction is required")

        with self._run_lock:
            if self._in_progress:
                raise RuntimeError("a run is already in progress on this agent")
            self._in_progress = True
            self._cancel.clear()
            self._resumed.set()
            self.state = LoopState()
            self.conversations = []
            self.error_msg = None

        t0 = time.time()
        try:
            self._set_status(StatusEnum.RUNNING)
            self._loop(instruction, list(history or []), auth_headers, list(image_attachments or []))
        except _Cancelled:
            logger.info("[loop] cancelled at iteration=%d", self.state.iteration)
            self._set_status(StatusEnum.END)
        except FatalRunError as e:
            logger.error("[loop] %s", e)
            cause = e.cause if e.cause is not None else e
            self.error_msg = error_payload(cause)
            self._set_status(StatusEnum.ERROR)
        except Exception as e:
            logger.exception("[loop] unexpected failure: %s", e)
            self.error_msg = error_payload(e)
            self._set_status(StatusEnum.ERROR)
        finally:
            with self._run_lock:
                self._in_progress = False
            logger.info(
                "[loop] done status=%s iterations=%d in %.1fs",
                self.state.status.value,
                self.state.iteration,
                time.time() - t0,
            )

    def _loop(
        self,
        instruction: str,
        history: List[Dict[str, Any]],
        auth_headers: Optional[Dict[str, str]],
        images: List[str],
    ) -> None:
        while True:
            self._checkpoint()
            self._wait_if_paused()

            if self.state.iteration >= self.max_loop_count:
                logger.info("[loop] reached max_loop_count=%d", self.max_loop_count)
                self._set_status(StatusEnum.END)
                return

            self.state.iteration += 1
            it = self.state.iteration
            t_iter = time.time()
            logger.info("[loop] iteration %d/%d", it, self.max_loop_count)

            # capture
            shot: ScreenshotResult = self._with_retry("capture", "screenshot", self.operator.screenshot)
            shot_b64 = shot.base64
            self._checkpoint()

            # infer + parse
            screenshots = [t.screenshot_base64 for t in self.conversations][-(self.max_screenshots - 1):] if self.max_screenshots > 1 else []
            screenshots.append(shot_b64)
            model_history = history + [{"from": "gpt", "value": t.prediction} for t in self.conversations]

            def _infer_and_parse() -> Any:
                prediction = self.model.predict(
                    instruction,
                    screenshots,
                    model_history,
                    auth_headers=auth_headers,
                    images=images if it == 1 and images else None,
                )
                action = self.parser(prediction)
                if action is None:
                    raise TransientPhaseError("parse", f"unparseable prediction: {prediction[:200]!r}")
                return prediction, action

            prediction, action = self._with_retry("infer", "model", _infer_and_parse)
            logger.info("[parse] action=%s inputs=%s", action.action_type, action.action_inputs)
            self._checkpoint()

            turn = Turn(
                iteration=it,
                screenshot_base64=shot_b64,
                scale_factor=shot.scale_factor,
                screen_size={"width": shot.width, "height": shot.height},
                prediction=prediction,
                action=action,
            )

            if action.is_terminal:
                turn.timing_ms = int((time.time() - t_iter) * 1000)
                self.conversations.append(turn)
                status = TERMINAL_STATUS[action.kind]
                if status == StatusEnum.ERROR:
                    self.error_msg = json.dumps({"status": None, "message": ENV_ERROR_MESSAGE, "stack": ""})
                logger.info("[loop] terminal prediction %s -> %s", action.action_type, status.value)
                self._set_status(status, new_turns=[turn])
                return

            # execute
            turn.execute_result = self._with_retry("execute", "execute", lambda: self.operator.execute(action))
            turn.timing_ms = int((time.time() - t_iter) * 1000)
            self.conversations.append(turn)
            self._emit([turn])

            # settle
            self._checkpoint()
            if self.loop_interval_ms > 0:
                self._sleep(self.loop_interval_ms / 1000.0)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------
    def _checkpoint(self) -> None:
        if self._cancel.is_set():
            raise _Cancelled()

    def _wait_if_paused(self) -> None:
        if self._resumed.is_set():
            return
        logger.info("[loop] paused before iteration %d", self.state.iteration + 1)
        self._set_status(StatusEnum.PAUSE)
        self._resumed.wait()
        self._checkpoint()
        logger.info("[loop] resumed")
        self._set_status(StatusEnum.RUNNING)

    def _with_retry(self, phase: str, budget: str, fn: Callable[[], Any]) -> Any:
        attempts = self.retry.for_phase(budget) + 1
        last: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            self._checkpoint()
            try:
                return fn()
            except Exception as e:
                last = e
                logger.warning("[retry] %s attempt %d/%d failed: %s", phase, attempt, attempts, e)
        raise FatalRunError(phase, last)

    def _set_status(self, status: StatusEnum, new_turns: Optional[List[Turn]] = None) -> None:
        self.state.status = status
        self._emit(new_turns or [])

    def _emit(self, new_turns: List[Turn]) -> None:
        if self.on_data is None:
            return
        data = GUIAgentData(status=self.state.status, conversations=list(new_turns), error_msg=self.error_msg)
        try:
            self.on_data(data)
        except Exception as e:
            logger.exception("[loop] on_data listener failed (status=%s): %s", data.status.value, e)
