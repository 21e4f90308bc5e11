"""
Shared pytest fixtures and configuration for all tests.
"""
import os

import pytest
from hypothesis import settings, Verbosity, Phase

from config.settings import Settings, clear_settings_cache
from encryption.decoder import PayloadDecoder
from storage.location_store import LocationStore

# Configure Hypothesis profiles for different environments
# Default profile: balanced for local development
settings.register_profile(
    "default",
    max_examples=100,
    verbosity=Verbosity.normal,
    deadline=None,  # SQLite and bcrypt calls make timings noisy
    print_blob=True,
)

# CI profile: more thorough testing for continuous integration
settings.register_profile(
    "ci",
    max_examples=200,
    verbosity=Verbosity.verbose,
    deadline=None,
    print_blob=True,
    derandomize=True,
)

# Debug profile: minimal examples for quick debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
    print_blob=True,
    phases=[Phase.explicit, Phase.reuse, Phase.generate],  # Skip shrinking for speed
)

# Fast profile: quick smoke tests
settings.register_profile(
    "fast",
    max_examples=20,
    verbosity=Verbosity.normal,
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "default"))


TEST_ENCRYPTION_KEY = "correct horse battery staple"


class FakeClock:
    """Settable clock passed to the store and ingestion service."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "data" / "owntracks.db")


@pytest.fixture
def store(db_path, clock):
    """An initialized store on a temporary file with a one hour TTL."""
    location_store = LocationStore(db_path, ttl_seconds=3600, clock=clock)
    location_store.init_schema()
    yield location_store
    location_store.close()


@pytest.fixture
def decoder() -> PayloadDecoder:
    return PayloadDecoder(TEST_ENCRYPTION_KEY)


@pytest.fixture
def make_settings(db_path):
    """Factory for Settings pointing at the temporary database."""
    def _make(**overrides) -> Settings:
        values = {
            "db_path": db_path,
            "cleanup_interval_seconds": 0,
            "log_level": "DEBUG",
        }
        values.update(overrides)
        return Settings(**values)
    return _make


@pytest.fixture
def sample_location() -> dict:
    """A location report as sent by the OwnTracks apps."""
    return {
        "_type": "location",
        "tid": "ph",
        "lat": 52.5,
        "lon": 13.4,
        "acc": 12,
        "alt": 34,
        "batt": 87,
        "bs": 1,
        "conn": "w",
        "tst": 1700000000,
        "vac": 3,
        "vel": 0,
        "cog": 270,
        "t": "u",
        "topic": "owntracks/alice/phone",
    }
