"""
External code-execution judge (JDoodle execute API)
"""
import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional

import aiohttp

from .errors import ExternalServiceFailure

logger = logging.getLogger("codesync")


# Environment variables for judge configuration
JDOODLE_URL = os.environ.get("JDOODLE_URL", "https://api.jdoodle.com/v1/execute")
JDOODLE_CLIENT_ID = os.environ.get("JDOODLE_CLIENT_ID", "")
JDOODLE_CLIENT_SECRET = os.environ.get("JDOODLE_CLIENT_SECRET", "")
JDOODLE_VERSION_INDEX = os.environ.get("JDOODLE_VERSION_INDEX", "3")
JDOODLE_TIMEOUT = float(os.environ.get("JDOODLE_TIMEOUT", "15"))

# Editor language tag -> judge language id
JUDGE_LANGUAGES = {
    "javascript": "nodejs",
    "typescript": "nodejs",
    "python": "python3",
    "java": "java",
    "cpp": "cpp17",
    "c": "c",
    "csharp": "csharp",
    "php": "php",
    "ruby": "ruby",
    "go": "go",
    "rust": "rust",
    "kotlin": "kotlin",
    "swift": "swift",
    "scala": "scala",
    "perl": "perl",
    "lua": "lua",
    "haskell": "haskell",
    "r": "r",
    "dart": "dart",
    "elixir": "elixir",
    "clojure": "clojure",
    "fsharp": "fsharp",
    "pascal": "pascal",
    "fortran": "fortran",
    "cobol": "cobol",
}


@dataclass(frozen=True)
class ExecutionResult:
    output: str = ""
    error: str = ""
    time: str = "0"
    memory: str = "0"

    @classmethod
    def failed(cls, error: str) -> "ExecutionResult":
        return cls(output="", error=error or "Execution failed", time="0", memory="0")

    def to_dict(self) -> dict:
        return {
            "output": self.output,
            "error": self.error,
            "time": self.time,
            "memory": self.memory,
        }


def resolve_language(language: str) -> str:
    """Map an editor language tag to the judge's id; unknown tokens pass through"""
    return JUDGE_LANGUAGES.get(language, language)


def is_judge_configured() -> bool:
    """Check if JDOODLE_* credentials are set"""
    return bool(JDOODLE_URL and JDOODLE_CLIENT_ID and JDOODLE_CLIENT_SECRET)


def _text(value) -> str:
    return "" if value is None else str(value)


class JudgeClient:
    """
    Thin async client for the judge.

    execute() either returns an ExecutionResult (including judge-reported
    compile/runtime errors) or raises ExternalServiceFailure. A timeout is
    always enforced on the whole request.
    """

    def __init__(
        self,
        url: str = JDOODLE_URL,
        client_id: str = JDOODLE_CLIENT_ID,
        client_secret: str = JDOODLE_CLIENT_SECRET,
        version_index: str = JDOODLE_VERSION_INDEX,
        timeout: float = JDOODLE_TIMEOUT,
    ):
        self.url = url
        self.client_id = client_id
        self.client_secret = client_secret
        self.version_index = version_index
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def configured(self) -> bool:
        return bool(self.url and self.client_id and self.client_secret)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def execute(self, script: str, language: str) -> ExecutionResult:
        if not self.configured:
            raise ExternalServiceFailure("Code execution is not configured")

        body = {
            "clientId": self.client_id,
            "clientSecret": self.client_secret,
            "script": script,
            "language": resolve_language(language),
            "versionIndex": self.version_index,
        }

        session = await self._get_session()
        try:
            async with session.post(self.url, json=body) as resp:
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = None
                if resp.status >= 400:
                    detail = data.get("error") if isinstance(data, dict) else None
                    raise ExternalServiceFailure(detail or f"Judge returned HTTP {resp.status}")
        except asyncio.TimeoutError:
            raise ExternalServiceFailure("Execution timed out")
        except aiohttp.ClientError as e:
            raise ExternalServiceFailure(str(e) or "Judge unreachable")

        if not isinstance(data, dict):
            raise ExternalServiceFailure("Unexpected response from judge")

        return ExecutionResult(
            output=_text(data.get("output")),
            error=_text(data.get("error")),
            time=_text(data.get("cpuTime") or "0"),
            memory=_text(data.get("memory") or "0"),
        )
