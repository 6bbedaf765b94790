from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from stageflow.app.main import create_app
from stageflow.app.services.email_dispatch import DispatchResult, EmailDispatchError


@dataclass
class RecordingEmailDispatcher:
    accept: bool = True
    fail_with: Optional[str] = None
    calls: list[tuple[str, str, int]] = field(default_factory=list)

    def send(self, template_id: str, candidate_id: str, delay_minutes: int) -> DispatchResult:
        self.calls.append((template_id, candidate_id, delay_minutes))
        if self.fail_with:
            raise EmailDispatchError(self.fail_with)
        if not self.accept:
            return DispatchResult(accepted=False, detail="rejected by relay")
        return DispatchResult(accepted=True, message_id=f"msg_{len(self.calls)}")


@pytest.fixture()
def dispatcher() -> RecordingEmailDispatcher:
    return RecordingEmailDispatcher()


@pytest.fixture()
def client(monkeypatch: pytest.MonkeyPatch, dispatcher: RecordingEmailDispatcher) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    app = create_app(dispatcher=dispatcher)
    return TestClient(app)
