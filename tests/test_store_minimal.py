from __future__ import annotations

import pytest

from pilot.memory.schema import (
    ActionResult,
    ActionStep,
    PilotSession,
    PilotStep,
    SessionStatus,
    StepMode,
    StepStatus,
)
from pilot.memory.store import PilotStore


def test_session_step_result_roundtrip(tmp_path) -> None:
    db_path = tmp_path / "pilot.sqlite"
    with PilotStore(db_path) as store:
        session = PilotSession(
            session_id="ps-1",
            uid="user-1",
            title="Demo",
            input={"query": "compare databases"},
            target_type="canvas",
            target_id="canvas-1",
        )
        store.create_session(session)

        loaded = store.get_session("ps-1")
        assert loaded is not None
        assert loaded.query == "compare databases"
        assert loaded.status == SessionStatus.INIT
        assert store.get_session("ps-1", uid="someone-else") is None

        store.update_session("ps-1", status=SessionStatus.WAITING, current_epoch=1, progress="{}")
        updated = store.get_session("ps-1")
        assert updated.status == SessionStatus.WAITING
        assert updated.current_epoch == 1
        assert updated.progress == "{}"

        store.create_step(
            PilotStep(step_id="pst-1", session_id="ps-1", name="Overview", epoch=0, entity_id="ar-1")
        )
        store.create_step(
            PilotStep(step_id="pst-2", session_id="ps-1", name="Summary", epoch=0, mode=StepMode.SUMMARY)
        )
        store.update_step_status("pst-1", StepStatus.FINISH)
        assert store.get_step("pst-1").status == StepStatus.FINISH
        assert [step.step_id for step in store.list_steps("ps-1", epoch=0, mode=StepMode.SUBTASK)] == ["pst-1"]
        assert len(store.list_steps("ps-1")) == 2

        store.save_result(ActionResult(result_id="ar-1", pilot_step_id="pst-1", title="Overview"))
        store.save_result(
            ActionResult(result_id="ar-1", version=1, pilot_step_id="pst-1", status=StepStatus.FINISH, errors=["x"])
        )
        store.save_result(ActionResult(result_id="ar-1", pilot_step_id="pst-1", title="Overview v0", storage_key="k"))

        assert store.get_result("ar-1").version == 1
        first = store.get_result("ar-1", version=0)
        assert first.title == "Overview v0"
        assert first.storage_key == "k"
        assert len(store.list_results_for_steps(["pst-1"])) == 2
        assert [result.version for result in store.list_results(["ar-1"], version=0)] == [0]

        store.save_action_step(ActionStep(result_id="ar-1", order=1, name="second", content="b"))
        store.save_action_step(ActionStep(result_id="ar-1", order=0, name="first", content="a"))
        assert [item.content for item in store.list_action_steps(["ar-1"])] == ["a", "b"]


def test_list_sessions_filters_and_paginates(tmp_path) -> None:
    with PilotStore(tmp_path / "pilot.sqlite") as store:
        for index in range(3):
            store.create_session(
                PilotSession(session_id=f"ps-{index}", uid="user-1", target_id="canvas-1" if index else None)
            )
        store.create_session(PilotSession(session_id="ps-other", uid="user-2"))

        assert len(store.list_sessions("user-1")) == 3
        assert len(store.list_sessions("user-1", target_id="canvas-1")) == 2
        assert len(store.list_sessions("user-1", offset=2, limit=10)) == 1
        assert [session.session_id for session in store.list_sessions("user-2")] == ["ps-other"]


def test_update_session_rejects_unknown_ids(tmp_path) -> None:
    with PilotStore(tmp_path / "pilot.sqlite") as store:
        with pytest.raises(KeyError):
            store.update_session("ps-missing", status=SessionStatus.FAILED)
        store.update_session("ps-missing")
