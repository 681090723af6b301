"""
Shared fixtures: in-memory database, fake collaborators and a virtual clock
"""

from typing import Any, Dict, List, Optional

import pytest

from repo_scanner.database import Base, create_db_engine, create_session_factory, init_db
from repo_scanner.core.ai.analyzer import SecurityAnalysisClient
from repo_scanner.core.ai.provider import AnalysisProvider
from repo_scanner.core.error_handling.exceptions import AnalysisProviderException
from repo_scanner.core.progress.store import ProgressStore
from repo_scanner.core.resilience.token_scheduler import TokenBudgetConfig, TokenBudgetScheduler
from repo_scanner.core.scanner.orchestrator import ScanOrchestrator, ScanSettings
from repo_scanner.core.scanner.retry_handler import RetryConfig


class VirtualClock:
    """Monotonic clock that only moves when sleep() is awaited"""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeProvider(AnalysisProvider):
    """Replays scripted answers; exceptions in the script are raised"""

    def __init__(self, script: Optional[List[Any]] = None, default: str = "No security issues found."):
        self.script = list(script or [])
        self.default = default
        self.prompts: List[str] = []
        self.instructions: List[str] = []

    async def complete(self, instruction: str, prompt: str) -> str:
        self.instructions.append(instruction)
        self.prompts.append(prompt)
        if self.script:
            answer = self.script.pop(0)
            if isinstance(answer, Exception):
                raise answer
            return answer
        return self.default


def overloaded() -> AnalysisProviderException:
    return AnalysisProviderException("[529] Overloaded", transient=True)


def build_structure(files: Dict[str, Any]) -> Dict[str, Any]:
    """Nested tree in the retrieval service's format from a flat {path: content} map"""
    tree: Dict[str, Any] = {}
    for path, content in files.items():
        parts = path.split("/")
        nodes = tree
        for directory in parts[:-1]:
            nodes = nodes.setdefault(directory, {"type": "directory", "children": {}})["children"]
        # unreadable entries sort last
        size = len(content) if isinstance(content, str) else 1_000_000
        nodes[parts[-1]] = {"type": "file", "size": size}
    return tree


class FakeRepositoryClient:
    def __init__(self, files: Dict[str, Any], repo_id: str = "a1b2c3d4e5f6"):
        self.files = files
        self.repo_id = repo_id
        self.fetches: List[str] = []

    async def clone_repository(self, repo_url: str, branch: str) -> str:
        return self.repo_id

    async def get_repository_structure(self, repo_id: str) -> Dict[str, Any]:
        return {
            "structure": build_structure(self.files),
            "total_lines": 100,
            "file_types": {"py": 1},
            "languages": ["Python"],
        }

    async def get_file_content(self, repo_id: str, path: str) -> str:
        self.fetches.append(path)
        content = self.files.get(path, "")
        if isinstance(content, Exception):
            raise content
        return content


@pytest.fixture
def session_factory():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield create_session_factory(engine)
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return ProgressStore(session_factory)


@pytest.fixture
def clock():
    return VirtualClock()


@pytest.fixture
def scheduler(clock):
    return TokenBudgetScheduler(TokenBudgetConfig(), clock=clock, sleep=clock.sleep)


def make_orchestrator(
    store: ProgressStore,
    files: Dict[str, Any],
    provider: FakeProvider,
    clock: VirtualClock,
    scheduler: TokenBudgetScheduler,
    chunk_size: int = 6000,
    request_delay: float = 0,
    chunk_delay: float = 0,
) -> ScanOrchestrator:
    client = SecurityAnalysisClient(
        provider=provider,
        scheduler=scheduler,
        retry_config=RetryConfig(max_retries=5, base_delay=3.0),
        sleep=clock.sleep,
    )
    return ScanOrchestrator(
        store=store,
        repository_client=FakeRepositoryClient(files),
        analysis_client=client,
        scan_settings=ScanSettings(
            chunk_size=chunk_size,
            max_tokens_per_request=25000,
            request_delay=request_delay,
            chunk_delay=chunk_delay,
        ),
        sleep=clock.sleep,
    )
