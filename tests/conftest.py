import os

# Settings must be in place before src.config is imported by any test module
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_KEY", "test-service-role-key")
os.environ.setdefault("ANON_COOKIE_SECRET", "test-cookie-secret")
os.environ.setdefault("SENTRY_ENABLED", "false")
os.environ.setdefault("LOKI_ENABLED", "false")

import pytest  # noqa: E402

from tests.helpers.fakes import (  # noqa: E402
    FakeClock,
    FakeGenerator,
    InMemoryAnonymousBackend,
    InMemoryProfileStore,
    build_controller,
    build_test_services,
)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def profile_store():
    return InMemoryProfileStore()


@pytest.fixture
def anon_backend():
    return InMemoryAnonymousBackend()


@pytest.fixture
def controller(profile_store, anon_backend, clock):
    return build_controller(profile_store=profile_store, anon_backend=anon_backend, clock=clock)


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def services(controller, generator):
    return build_test_services(controller, generator)
