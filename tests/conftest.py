"""Provide common pytest fixtures."""

import asyncio

import pytest
import pytest_asyncio

from treepush.auth import static_token_provider
from treepush.github_api import GitHubClient
from treepush.governor import RateLimitGovernor
from treepush.push import PushOrchestrator

from .fake_github import FakeGitHub

API_URL = "https://api.github.test"
START_TIME = 1_700_000_000.0


class FakeClock:
    """Manual clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = START_TIME):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture(name="clock")
def clock_fixture():
    return FakeClock()


@pytest.fixture(name="fake_github")
def fake_github_fixture():
    return FakeGitHub()


@pytest.fixture(name="governor")
def governor_fixture(clock):
    return RateLimitGovernor(clock=clock, sleep=clock.sleep, random_fn=lambda: 0.0)


@pytest_asyncio.fixture(name="github_client")
async def github_client_fixture(fake_github, governor):
    client = GitHubClient(
        static_token_provider("test-token"),
        governor=governor,
        api_url=API_URL,
        transport=fake_github.transport,
    )
    yield client
    await client.aclose()


@pytest.fixture(name="orchestrator")
def orchestrator_fixture(github_client, clock):
    return PushOrchestrator(github_client, sleep=clock.sleep, repo_init_wait_seconds=0.5)
