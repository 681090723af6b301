import asyncio
import json
from typing import Any, Dict, Optional

from repo_scanner.config import settings
from ..analyzer.chunker import estimate_tokens
from ..analyzer.classifier import RepoFile, ScanType
from ..resilience.token_scheduler import TokenBudgetScheduler, get_token_scheduler
from ..scanner.retry_handler import RetryConfig, RetryFailure, RetryHandler
from ..error_handling.exceptions import AnalysisProviderException
from ..logging.structured_logger import get_logger, EventType
from .provider import AnalysisProvider, OpenAIAnalysisProvider

logger = get_logger(__name__)

SYSTEM_INSTRUCTION = """
You are a security expert. Analyze the provided code snippets and dependency files for potential security vulnerabilities and outdated packages.
Provide a detailed report of your findings, including the vulnerability type, severity, and recommended remediation.
For dependency files, list any outdated packages with their current version and the recommended latest version.
"""

SCAN_TYPE_FOCUS = {
    ScanType.SBOM: "\nFocus specifically on dependency analysis, version checks, and known vulnerabilities in packages.",
    ScanType.VULNERABILITY: "\nFocus specifically on code-level security vulnerabilities like injection flaws, authentication issues, and logic errors.",
}


class SecurityAnalysisClient:
    """
    Wraps one provider call per analysis unit with token scheduling and
    exponential-backoff retries. Provider failures come back as an error
    payload, never as an exception.
    """

    def __init__(
        self,
        provider: Optional[AnalysisProvider] = None,
        scheduler: Optional[TokenBudgetScheduler] = None,
        retry_config: Optional[RetryConfig] = None,
        sleep=asyncio.sleep,
    ):
        self._provider = provider
        self.scheduler = scheduler or get_token_scheduler()
        self.retry_config = retry_config or RetryConfig(
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay_seconds,
        )
        self._sleep = sleep

    @property
    def provider(self) -> AnalysisProvider:
        if self._provider is None:
            self._provider = OpenAIAnalysisProvider()
        return self._provider

    def build_instruction(self, scan_type: str) -> str:
        try:
            focus = SCAN_TYPE_FOCUS.get(ScanType(scan_type), "")
        except ValueError:
            focus = ""
        return SYSTEM_INSTRUCTION + focus

    def build_prompt(self, content: str, file: RepoFile, chunk_info: Optional[str] = None) -> str:
        chunk_suffix = f" ({chunk_info})" if chunk_info else ""
        return (
            f"Analyze the following {file.classification.value.lower()} file \"{file.path}\"{chunk_suffix} "
            f"for security issues:\n\n```\n{content}\n```"
        )

    async def analyze(
        self,
        content: str,
        file: RepoFile,
        scan_type: str,
        chunk_info: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Analyze one file (or one chunk of it)"""
        instruction = self.build_instruction(scan_type)
        prompt = self.build_prompt(content, file, chunk_info)
        estimated = estimate_tokens(content)
        handler = RetryHandler(self.retry_config, sleep=self._sleep)

        async def reserve(attempt: int):
            await self.scheduler.reserve(estimated)

        async def call():
            return await self.provider.complete(instruction, prompt)

        label = f"{file.path} {chunk_info}" if chunk_info else file.path
        try:
            analysis = await handler.execute_with_retry(call, f"analyze {label}", before_attempt=reserve)
        except RetryFailure as failure:
            logger.warning(
                f"Error analyzing file {file.path}: {failure.last_error}",
                event_type=EventType.ERROR_OCCURRED,
                metadata={"attempts": failure.attempts, "chunk": chunk_info}
            )
            return {
                "file_path": file.path,
                "file_type": file.classification.value,
                "error": f"Analysis failed after {failure.attempts} attempts: {failure.last_error}",
                "retry_count": failure.attempts,
            }

        return {
            "file_path": file.path,
            "file_type": file.classification.value,
            "analysis": analysis,
        }

    async def analyze_snippet(self, code: Optional[str] = None, dependencies: Any = None) -> str:
        """Direct analysis of a pasted code snippet and/or dependency listing"""
        prompt = ""
        if code:
            prompt += f"Analyze the following code for security vulnerabilities:\n\n```\n{code}\n```\n\n"
        if dependencies:
            prompt += (
                "Analyze the following dependencies for outdated packages:\n\n"
                f"```\n{json.dumps(dependencies, indent=2)}\n```"
            )

        handler = RetryHandler(self.retry_config, sleep=self._sleep)
        estimated = estimate_tokens(prompt)

        async def reserve(attempt: int):
            await self.scheduler.reserve(estimated)

        try:
            return await handler.execute_with_retry(
                lambda: self.provider.complete(SYSTEM_INSTRUCTION, prompt),
                "analyze snippet",
                before_attempt=reserve,
            )
        except RetryFailure as failure:
            raise AnalysisProviderException(
                f"Analysis failed after {failure.attempts} attempts: {failure.last_error}",
                transient=failure.transient,
                cause=failure.last_error,
            ) from failure
