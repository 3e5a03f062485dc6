"""Shared test fixtures."""

from collections.abc import Callable

import pytest

from flowgate.core.identity import AuthMethod, Identity


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_identity() -> Callable[..., Identity]:
    """Factory for request identities."""

    def _make(
        subject_id: str = "user-1",
        role: str = "developer",
        organization_id: str = "org-1",
        **kwargs: object,
    ) -> Identity:
        return Identity(
            subject_id=subject_id,
            role=role,
            organization_id=organization_id,
            session_id=kwargs.pop("session_id", f"sess-{subject_id}"),  # type: ignore[arg-type]
            auth_method=kwargs.pop("auth_method", AuthMethod.BEARER),  # type: ignore[arg-type]
            **kwargs,  # type: ignore[arg-type]
        )

    return _make
