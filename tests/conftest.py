from __future__ import annotations

from typing import Any, List

import pytest

from fakes import FakeClock, FakeService
from quiztaker.session.controller import AttemptSessionController


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def service(clock: FakeClock) -> FakeService:
    return FakeService(clock)


@pytest.fixture
async def make_controller(clock: FakeClock):
    """
    Controllers whose background periods never fire on their own; tests
    drive ticks and autosave periods by hand.
    """
    created: List[AttemptSessionController] = []

    def _make(service: FakeService, **kwargs: Any) -> AttemptSessionController:
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("tick_seconds", 3600)
        kwargs.setdefault("autosave_seconds", 3600)
        kwargs.setdefault("warning_seconds", 60)
        kwargs.setdefault("grace_seconds", 0)
        controller = AttemptSessionController(service, **kwargs)
        created.append(controller)
        return controller

    yield _make

    for controller in created:
        await controller.close()
