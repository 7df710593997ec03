"""Shared fixtures: an isolated Config per test and an in-memory notification outbox."""

from __future__ import annotations

import pytest

from paperdesk.config import Config, SecurityConfig, WorkflowConfig
from paperdesk.notifications import Notifier, OutboxTransport


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(
        environment="test",
        data_dir=tmp_path,
        workflow=WorkflowConfig(min_reviews_for_revision=1),
        security=SecurityConfig(jwt_secret="unit-test-secret-0123456789"),
    )


@pytest.fixture
def outbox() -> OutboxTransport:
    return OutboxTransport()


@pytest.fixture
def notifier(outbox, config) -> Notifier:
    return Notifier(outbox, config)
