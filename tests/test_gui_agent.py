import json

import pytest

from action_space import RetryPolicy
from conftest import RecordingOperator, ScriptedModel
from gui_agent import ENV_ERROR_MESSAGE, GUIAgent, StatusEnum
from webview_operator import EmbeddedBrowserOperator
from webview_session import SurfaceSession

CLICK = "Thought: open the address bar\nAction: click(start_box='(500,50)')"
TYPE_URL = "Thought: go to the site\nAction: type(content='openrouter.ai\\n')"
FINISHED = "Thought: done\nAction: finished()"


def _agent(model, operator, statuses=None, turns=None, **kw):
    def on_data(data):
        if statuses is not None:
            statuses.append(data.status)
        if turns is not None:
            turns.extend(data.conversations)

    kw.setdefault("sleep", lambda s: None)
    return GUIAgent(model, operator, on_data=on_data, **kw)


def test_click_type_finished_on_embedded_surface(browser, sleeps):
    session = SurfaceSession(browser, sleep=sleeps.append)
    operator = EmbeddedBrowserOperator(session, is_mac=False, sleep=sleeps.append)
    operator.connect()

    model = ScriptedModel([CLICK, TYPE_URL, FINISHED])
    turns = []
    agent = _agent(model, operator, turns=turns)
    agent.run("open openrouter.ai")

    assert agent.state.status == StatusEnum.END
    assert len(agent.conversations) == 3
    assert [t.action.action_type for t in agent.conversations] == ["click", "type", "finished"]

    typed = agent.conversations[1].execute_result.events
    assert typed[0] == ("Input.insertText", {"text": "openrouter.ai"})
    assert [(p["type"], p["key"]) for _, p in typed[1:]] == [("rawKeyDown", "Enter"), ("keyUp", "Enter")]
    assert agent.conversations[2].execute_result is None
    assert turns == agent.conversations


def test_loop_ceiling_ends_after_exact_iterations():
    op = RecordingOperator()
    agent = _agent(ScriptedModel([CLICK]), op, max_loop_count=2)
    agent.run("keep clicking")

    assert agent.state.status == StatusEnum.END
    assert agent.state.iteration == 2
    assert len(op.executed) == 2


def test_stop_during_inference_prevents_execute():
    op = RecordingOperator()
    agent = None

    def _stop(n):
        agent.stop()

    model = ScriptedModel([CLICK], on_predict=_stop)
    agent = _agent(model, op)
    agent.run("anything")

    assert agent.state.status == StatusEnum.END
    assert agent.state.cancelled
    assert op.executed == []
    assert len(model.calls) == 1


def test_stop_during_execute_prevents_next_model_call():
    model = ScriptedModel([CLICK])
    agent = None
    op = RecordingOperator(on_execute=lambda a: agent.stop())
    agent = _agent(model, op)
    agent.run("anything")

    assert agent.state.status == StatusEnum.END
    assert len(model.calls) == 1
    assert len(op.executed) == 1
    assert op.screenshots == 1


def test_screenshot_retry_exhaustion_is_error():
    op = RecordingOperator()
    op.screenshot_error = RuntimeError("display lost")
    model = ScriptedModel([CLICK])
    statuses = []
    agent = _agent(model, op, statuses=statuses, retry=RetryPolicy(screenshot=2))
    agent.run("anything")

    assert agent.state.status == StatusEnum.ERROR
    assert op.screenshots == 3
    assert model.calls == []
    payload = json.loads(agent.error_msg)
    assert payload["message"] == "display lost"
    assert "RuntimeError" in payload["stack"]
    assert statuses[-1] == StatusEnum.ERROR


def test_unparseable_prediction_is_retried_as_model_failure():
    model = ScriptedModel(["I do not know", FINISHED])
    agent = _agent(model, RecordingOperator())
    agent.run("anything")
    assert agent.state.status == StatusEnum.END
    assert len(model.calls) == 2


def test_model_retry_exhaustion():
    model = ScriptedModel([ConnectionError("model down")])
    agent = _agent(model, RecordingOperator(), retry=RetryPolicy(model=1))
    agent.run("anything")
    assert agent.state.status == StatusEnum.ERROR
    assert len(model.calls) == 2
    assert json.loads(agent.error_msg)["message"] == "model down"


def test_execute_is_retried_once_by_default():
    op = RecordingOperator()
    op.execute_errors = [RuntimeError("flaky")]
    agent = _agent(ScriptedModel([CLICK, FINISHED]), op)
    agent.run("anything")
    assert agent.state.status == StatusEnum.END
    assert len(op.executed) == 1


def test_execute_retry_exhaustion():
    op = RecordingOperator()
    op.execute_errors = [RuntimeError("a"), RuntimeError("b")]
    agent = _agent(ScriptedModel([CLICK, FINISHED]), op)
    agent.run("anything")
    assert agent.state.status == StatusEnum.ERROR
    assert json.loads(agent.error_msg)["message"] == "b"


@pytest.mark.parametrize(
    "prediction,status",
    [
        ("Action: finished()", StatusEnum.END),
        ("Action: call_user()", StatusEnum.CALL_USER),
        ("Action: user_stop()", StatusEnum.USER_STOPPED),
        ("Action: error_env()", StatusEnum.ERROR),
    ],
)
def test_terminal_prediction_status(prediction, status):
    op = RecordingOperator()
    agent = _agent(ScriptedModel([prediction]), op)
    agent.run("anything")
    assert agent.state.status == status
    assert op.executed == []
    assert len(agent.conversations) == 1
    if status == StatusEnum.ERROR:
        assert json.loads(agent.error_msg)["message"] == ENV_ERROR_MESSAGE


def test_history_screenshots_and_images_sent_to_model():
    model = ScriptedModel([CLICK, CLICK, CLICK, FINISHED])
    agent = _agent(model, RecordingOperator(), max_screenshots=2)
    history = [{"from": "human", "value": "earlier question"}]
    agent.run("anything", history=history, auth_headers={"X-Token": "t"}, image_attachments=["aW1n"])

    first, second, fourth = model.calls[0], model.calls[1], model.calls[3]
    assert first["images"] == ["aW1n"]
    assert second["images"] is None
    assert first["auth_headers"] == {"X-Token": "t"}
    assert first["history"] == history
    assert second["history"] == history + [{"from": "gpt", "value": CLICK}]
    assert len(first["screenshots"]) == 1
    assert len(fourth["screenshots"]) == 2
    assert fourth["screenshots"][-1] == agent.conversations[3].screenshot_base64


def test_pause_then_resume_continues():
    statuses = []
    agent = None

    def on_data(data):
        statuses.append(data.status)
        if data.status == StatusEnum.PAUSE:
            agent.resume()

    model = ScriptedModel([CLICK, FINISHED], on_predict=lambda n: agent.pause() if n == 1 else None)
    agent = GUIAgent(model, RecordingOperator(), on_data=on_data, sleep=lambda s: None)
    agent.run("anything")

    assert agent.state.status == StatusEnum.END
    assert StatusEnum.PAUSE in statuses
    assert statuses[statuses.index(StatusEnum.PAUSE) + 1] == StatusEnum.RUNNING
    assert len(model.calls) == 2


def test_stop_while_paused_ends_without_more_calls():
    agent = None

    def on_data(data):
        if data.status == StatusEnum.PAUSE:
            agent.stop()

    model = ScriptedModel([CLICK], on_predict=lambda n: agent.pause())
    op = RecordingOperator()
    agent = GUIAgent(model, op, on_data=on_data, sleep=lambda s: None)
    agent.run("anything")

    assert agent.state.status == StatusEnum.END
    assert len(model.calls) == 1
    assert len(op.executed) == 1


def test_loop_interval_sleeps_between_iterations():
    slept = []
    agent = GUIAgent(ScriptedModel([CLICK]), RecordingOperator(), max_loop_count=3, loop_interval_ms=250, sleep=slept.append)
    agent.run("anything")
    assert slept == [0.25, 0.25, 0.25]


def test_empty_instruction_rejected():
    agent = GUIAgent(ScriptedModel([FINISHED]), RecordingOperator())
    with pytest.raises(ValueError):
        agent.run("  ")


def test_second_concurrent_run_rejected():
    errors = []
    agent = None

    def _reenter(n):
        try:
            agent.run("again")
        except RuntimeError as e:
            errors.append(e)

    agent = GUIAgent(ScriptedModel([FINISHED], on_predict=_reenter), RecordingOperator())
    agent.run("first")
    assert len(errors) == 1
    assert agent.state.status == StatusEnum.END
    assert not agent.in_progress


def test_agent_can_run_again_after_stop():
    model = ScriptedModel([FINISHED])
    agent = GUIAgent(model, RecordingOperator())
    agent.stop()
    agent.run("fresh run")
    assert agent.state.status == StatusEnum.END
    assert len(model.calls) == 1


def test_failing_listener_does_not_escape_run(caplog):
    def on_data(data):
        raise RuntimeError("listener down")

    op = RecordingOperator()
    agent = GUIAgent(ScriptedModel([CLICK, FINISHED]), op, on_data=on_data, sleep=lambda s: None)
    agent.run("anything")

    assert agent.state.status == StatusEnum.END
    assert len(op.executed) == 1
    assert "listener down" in caplog.text
