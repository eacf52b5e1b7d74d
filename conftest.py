import pytest


class FakeClock:
    """Manually driven monotonic clock"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    def set(self, value: float):
        self.now = value


@pytest.fixture
def clock():
    return FakeClock()
