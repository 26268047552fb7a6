import asyncio

import pytest

from fakes import START, FakeService
from quiztaker.session.controller import StaticConfirmation
from quiztaker.session.events import NotificationKind
from quiztaker.session.state import InFlight, SessionState
from quiztaker.utils.exceptions import (
    InitializationError,
    NavigationFailure,
    OperationRejected,
    SubmitFailure,
)


async def wait_for(predicate):
    for _ in range(100):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


# ----------------------------------------------------------------------
# Initialization
# ----------------------------------------------------------------------


async def test_starts_fresh_attempt(service, make_controller):
    controller = make_controller(service)

    view = await controller.initialize(7)

    assert view.state is SessionState.ACTIVE
    assert view.attempt_id == 100
    assert view.quiz_name == "Unit 3 quiz"
    assert view.current_page_index == 0
    assert view.total_pages == 3
    assert [q.id for q in view.questions] == [1, 2, 3]
    assert view.is_dirty is False
    assert view.resumed is False
    assert service.calls_to("start_attempt") == [("start_attempt", 7, False)]
    assert NotificationKind.STARTED in controller.bus.kinds()


async def test_resumes_at_recorded_page(service, make_controller):
    service.add_in_progress(currentpage=2)
    controller = make_controller(service)

    view = await controller.initialize(7)

    assert view.attempt_id == 42
    assert view.current_page_index == 2
    assert [q.id for q in view.questions] == [5]
    assert view.resumed is True
    assert service.calls_to("start_attempt") == []
    assert controller.bus.kinds()[:2] == [NotificationKind.RESUMING, NotificationKind.STARTED]


async def test_resume_failure_falls_back_to_new_attempt(service, make_controller):
    service.add_in_progress(currentpage=1)
    service.broken_attempts.add(42)
    controller = make_controller(service)

    view = await controller.initialize(7)

    assert view.state is SessionState.ACTIVE
    assert view.attempt_id == 100
    assert view.current_page_index == 0
    assert view.resumed is False
    assert service.calls_to("start_attempt") == [("start_attempt", 7, True)]
    assert NotificationKind.RESUME_FAILED in controller.bus.kinds()


async def test_attempt_listing_failure_starts_fresh(service, make_controller):
    service.fail_next("get_in_progress_attempt")
    controller = make_controller(service)

    view = await controller.initialize(7)

    assert view.state is SessionState.ACTIVE
    assert view.attempt_id == 100


async def test_access_info_is_optional(service, make_controller):
    service.fail_next("get_access_info")
    controller = make_controller(service)

    view = await controller.initialize(7)

    assert view.state is SessionState.ACTIVE
    assert view.access_info is None


async def test_initialization_fails_when_start_fails(service, make_controller):
    service.fail_next("start_attempt")
    controller = make_controller(service)

    with pytest.raises(InitializationError):
        await controller.initialize(7)

    assert controller.session.state is SessionState.FAILED
    assert controller.bus.kinds()[-1] is NotificationKind.INITIALIZATION_FAILED
    assert not controller.autosave.running


async def test_initialization_fails_when_quiz_unknown(service, make_controller):
    service.fail_next("get_quiz")
    controller = make_controller(service)

    with pytest.raises(InitializationError):
        await controller.initialize(7)

    assert controller.session.state is SessionState.FAILED
    assert service.calls_to("start_attempt") == []


async def test_operations_rejected_before_initialize(service, make_controller):
    controller = make_controller(service)

    with pytest.raises(OperationRejected):
        controller.record_answer_change("q3", "x")
    with pytest.raises(OperationRejected):
        await controller.submit()
    assert await controller.autosave_once() is None


# ----------------------------------------------------------------------
# Answers and autosave
# ----------------------------------------------------------------------


async def test_dirty_flag_lifecycle(service, make_controller):
    controller = make_controller(service)
    view = await controller.initialize(7)
    assert view.is_dirty is False

    view = controller.record_answer_change("q3", "Paris")
    assert view.is_dirty is True

    assert await controller.autosave_once() is True
    assert controller.view().is_dirty is False
    assert controller.view().last_autosave_timestamp == START

    controller.record_answer_change("q2", "1")
    assert controller.view().is_dirty is True
    await controller.submit()
    assert controller.view().is_dirty is False


async def test_unchecked_option_is_not_saved(service, make_controller):
    controller = make_controller(service)
    await controller.initialize(7)

    controller.record_answer_change("q1_choice_b", True)
    controller.record_answer_change("q1_choice_b", False)
    await controller.autosave_once()

    assert "q1" not in service.saves[-1]


async def test_checked_options_are_saved_as_list(service, make_controller):
    controller = make_controller(service)
    await controller.initialize(7)

    controller.record_answer_change("q1_choice_c", True)
    controller.record_answer_change("q1_choice_a", True)
    await controller.autosave_once()

    assert service.saves[-1]["q1"] == ["choice_a", "choice_c"]


async def test_untouched_fields_are_not_sent(service, make_controller):
    controller = make_controller(service)
    await controller.initialize(7)

    controller.record_answer_change("q2", "1")
    await controller.autosave_once()

    assert service.saves == [{"q2": "1"}]


async def test_cleared_text_answer_is_sent(service, make_controller):
    controller = make_controller(service)
    await controller.initialize(7)

    controller.record_answer_change("q3", "Paris")
    controller.record_answer_change("q3", "")
    await controller.autosave_once()

    assert service.saves == [{"q3": ""}]


async def test_failed_autosave_retries_next_period(service, make_controller):
    controller = make_controller(service)
    await controller.initialize(7)
    controller.record_answer_change("q3", "Paris")
    service.fail_next("save_attempt")

    dirty = [controller.view().is_dirty]
    assert await controller.autosave_once() is False
    dirty.append(controller.view().is_dirty)
    assert await controller.autosave_once() is True
    dirty.append(controller.view().is_dirty)

    assert dirty == [True, True, False]
    assert len(service.saves) == 2
    assert NotificationKind.SAVE_FAILED in controller.bus.kinds()
    assert controller.view().state is SessionState.ACTIVE


async def test_autosave_skips_clean_session(service, make_controller):
    controller = make_controller(service)
    await controller.initialize(7)

    assert await controller.autosave_once() is None
    assert service.saves == []


async def test_edit_during_autosave_keeps_session_dirty(service, make_controller):
    controller = make_controller(service)
    await controller.initialize(7)
    service.save_gate = asyncio.Event()

    controller.record_answer_change("q3", "Par")
    save = asyncio.create_task(controller.autosave_once())
    await wait_for(lambda: controller.session.in_flight is InFlight.AUTOSAVING)

    controller.record_answer_change("q3", "Paris")
    service.save_gate.set()
    assert await save is True
    assert controller.view().is_dirty is True

    assert await controller.autosave_once() is True
    assert service.saves[-1]["q3"] == "Paris"
    assert controller.view().is_dirty is False


async def test_rejects_unknown_field(service, make_controller):
    controller = make_controller(service)
    await controller.initialize(7)

    with pytest.raises(OperationRejected):
        controller.record_answer_change("q99", "x")
    with pytest.raises(OperationRejected):
        controller.record_answer_change("q2", "maybe")
    assert controller.view().is_dirty is False


# ----------------------------------------------------------------------
# Navigation
# ----------------------------------------------------------------------


async def test_navigate_loads_page(service, make_controller):
    controller = make_controller(service)
    await controller.initialize(7)

    view = await controller.navigate_to_page(1)

    assert view.current_page_index == 1
    assert [q.id for q in view.questions] == [4]
    assert view.state is SessionState.ACTIVE
    assert controller.bus.kinds()[-1] is NotificationKind.PAGE_CHANGED


async def test_navigate_saves_pending_answers_first(service, make_controller):
    controller = make_controller(service)
    await controller.initialize(7)
    controller.record_answer_change("q3", "Paris")

    view = await controller.navigate_to_page(2)

    assert service.saves == [{"q3": "Paris"}]
    assert view.is_dirty is False
    assert view.current_page_index == 2


async def test_navigate_out_of_range(service, make_controller):
    controller = make_controller(service)
    await controller.initialize(7)

    with pytest.raises(OperationRejected):
        await controller.navigate_to_page(3)
    with pytest.raises(OperationRejected):
        await controller.navigate_to_page(-1)


async def test_navigate_failure_keeps_previous_page(service, make_controller):
    controller = make_controller(service)
    await controller.initialize(7)
    controller.record_answer_change("q3", "Paris")
    service.fail_next("get_attempt_data")

    with pytest.raises(NavigationFailure):
        await controller.navigate_to_page(1)

    view = controller.view()
    assert view.current_page_index == 0
    assert [q.id for q in view.questions] == [1, 2, 3]
    assert view.state is SessionState.ACTIVE
    assert view.in_flight is InFlight.NONE
    assert view.is_dirty is True
    assert controller.bus.kinds()[-1] is NotificationKind.NAVIGATION_FAILED


async def test_navigate_rejected_while_saving(service, make_controller):
    controller = make_controller(service)
    await controller.initialize(7)
    service.save_gate = asyncio.Event()
    controller.record_answer_change("q3", "Paris")
    save = asyncio.create_task(controller.autosave_once())
    await wait_for(lambda: controller.session.in_flight is InFlight.AUTOSAVING)

    with pytest.raises(OperationRejected):
        await controller.navigate_to_page(1)

    service.save_gate.set()
    await save


# ----------------------------------------------------------------------
# Submission
# ----------------------------------------------------------------------


async def test_submit_finalizes_once(service, make_controller):
    controller = make_controller(service)
    await controller.initialize(7)
    controller.record_answer_change("q2", "1")

    result = await controller.submit()

    assert result.state == "finished"
    assert service.submits == [{"q2": "1"}]
    assert controller.view().state is SessionState.SUBMITTED
    assert controller.closed
    with pytest.raises(OperationRejected):
        await controller.submit()
    with pytest.raises(OperationRejected):
        controller.record_answer_change("q2", "0")
    assert len(service.submits) == 1


async def test_second_submit_while_submitting_is_rejected(service, make_controller):
    controller = make_controller(service)
    await controller.initialize(7)
    service.submit_gate = asyncio.Event()

    first = asyncio.create_task(controller.submit())
    await wait_for(lambda: controller.session.in_flight is InFlight.SUBMITTING)

    with pytest.raises(OperationRejected):
        await controller.submit()
    with pytest.raises(OperationRejected):
        await controller.cancel()
    assert await controller.autosave_once() is None

    service.submit_gate.set()
    await first
    assert len(service.calls_to("submit_attempt")) == 1


async def test_submit_waits_for_inflight_autosave(service, make_controller):
    controller = make_controller(service)
    await controller.initialize(7)
    service.save_gate = asyncio.Event()
    controller.record_answer_change("q3", "Paris")

    save = asyncio.create_task(controller.autosave_once())
    await wait_for(lambda: controller.session.in_flight is InFlight.AUTOSAVING)
    submit = asyncio.create_task(controller.submit())
    await asyncio.sleep(0)
    assert service.submits == []

    service.save_gate.set()
    await save
    await submit

    names = [c[0] for c in service.calls if c[0] in ("save_attempt", "submit_attempt")]
    assert names == ["save_attempt", "submit_attempt"]
    assert controller.view().state is SessionState.SUBMITTED


async def test_submit_failure_allows_retry(service, make_controller):
    controller = make_controller(service)
    await controller.initialize(7)
    service.fail_next("submit_attempt")

    with pytest.raises(SubmitFailure):
        await controller.submit()

    assert controller.view().state is SessionState.ACTIVE
    assert controller.view().in_flight is InFlight.NONE
    assert controller.bus.kinds()[-1] is NotificationKind.SUBMIT_FAILED

    await controller.submit()
    assert controller.view().state is SessionState.SUBMITTED
    assert len(service.submits) == 2


async def test_declined_submit_changes_nothing(service, make_controller):
    controller = make_controller(service)
    await controller.initialize(7)

    assert await controller.submit(StaticConfirmation(False)) is None
    assert service.submits == []
    assert controller.view().state is SessionState.ACTIVE


async def test_submit_stops_background_work(clock, make_controller):
    service = FakeService(clock, timelimit=600)
    controller = make_controller(service)
    await controller.initialize(7)
    assert controller.timer.running
    assert controller.autosave.running

    await controller.submit()

    assert not controller.timer.running
    assert not controller.autosave.running


# ----------------------------------------------------------------------
# Cancellation
# ----------------------------------------------------------------------


async def test_declined_cancel_keeps_session(service, make_controller):
    controller = make_controller(service)
    await controller.initialize(7)

    assert await controller.cancel(StaticConfirmation(False)) is False
    assert controller.view().state is SessionState.ACTIVE


async def test_cancel_during_initialization(service, make_controller):
    controller = make_controller(service)
    service.start_gate = asyncio.Event()

    init = asyncio.create_task(controller.initialize(7))
    await wait_for(lambda: service.calls_to("start_attempt"))

    assert await controller.cancel() is True
    assert controller.session.state is SessionState.CANCELLED

    service.start_gate.set()
    with pytest.raises(OperationRejected):
        await init

    assert controller.view().state is SessionState.CANCELLED
    assert controller.timer is None
    assert not controller.autosave.running
    assert controller.bus.kinds() == [NotificationKind.CANCELLED]


async def test_cancel_abandons_locally(service, make_controller):
    controller = make_controller(service)
    await controller.initialize(7)
    controller.record_answer_change("q3", "Paris")

    assert await controller.cancel() is True

    view = controller.view()
    assert view.state is SessionState.CANCELLED
    assert view.questions == []
    assert not controller.autosave.running
    assert service.submits == []
    assert controller.bus.kinds()[-1] is NotificationKind.CANCELLED
    with pytest.raises(OperationRejected):
        await controller.navigate_to_page(1)


# ----------------------------------------------------------------------
# Countdown and expiry
# ----------------------------------------------------------------------


async def test_expiry_submits_exactly_once(clock, make_controller):
    service = FakeService(clock, timelimit=5)
    controller = make_controller(service)
    await controller.initialize(7)

    clock.advance(5)
    for _ in range(3):
        controller.timer.tick()
        clock.advance(1)
    await controller.auto_submit_task

    assert service.submits == [{}]
    assert controller.view().state is SessionState.SUBMITTED
    kinds = controller.bus.kinds()
    assert kinds.count(NotificationKind.TIME_EXPIRED) == 1
    assert kinds.count(NotificationKind.SUBMITTED) == 1


async def test_expiry_waits_for_inflight_submit(clock, make_controller):
    service = FakeService(clock, timelimit=60)
    controller = make_controller(service)
    await controller.initialize(7)
    service.submit_gate = asyncio.Event()

    submit = asyncio.create_task(controller.submit())
    await wait_for(lambda: controller.session.in_flight is InFlight.SUBMITTING)
    clock.advance(60)
    controller.timer.tick()

    service.submit_gate.set()
    await submit
    await controller.auto_submit_task

    assert len(service.submits) == 1


async def test_resumed_attempt_past_deadline_submits_on_start(clock, make_controller):
    service = FakeService(clock, timelimit=600)
    service.add_in_progress(currentpage=0, started=START - 1000)
    controller = make_controller(service)

    view = await controller.initialize(7)
    assert view.countdown.expired
    await controller.auto_submit_task

    assert len(service.submits) == 1
    assert controller.view().state is SessionState.SUBMITTED


async def test_time_warning_fires_once(clock, make_controller):
    service = FakeService(clock, timelimit=600)
    controller = make_controller(service, warning_seconds=60)
    await controller.initialize(7)

    clock.advance(545)
    controller.timer.tick()
    clock.advance(5)
    controller.timer.tick()

    warnings = [n for n in controller.bus.history if n.kind is NotificationKind.TIME_WARNING]
    assert len(warnings) == 1
    assert warnings[0].payload == {"remaining": 55}


async def test_countdown_in_view(clock, make_controller):
    service = FakeService(clock, timelimit=600)
    controller = make_controller(service)
    await controller.initialize(7)

    clock.advance(100)
    controller.timer.tick()

    countdown = controller.view().countdown
    assert countdown.time_remaining_seconds == 500
    assert countdown.total_seconds == 600


async def test_untimed_quiz_has_no_countdown(service, make_controller):
    controller = make_controller(service)
    view = await controller.initialize(7)

    assert controller.timer is None
    assert view.countdown is None


async def test_close_keeps_attempt_on_server(service, make_controller):
    controller = make_controller(service)
    await controller.initialize(7)
    controller.record_answer_change("q3", "Paris")

    await controller.close()

    assert controller.closed
    assert service.saves == []
    assert service.submits == []
    assert controller.bus.kinds()[-1] is NotificationKind.CLOSED
    with pytest.raises(OperationRejected):
        await controller.submit()
