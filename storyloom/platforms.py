"""Platform commands and the security gate.

A platform executes named commands on behalf of an actor and returns a
CommandResult: a short human-readable summary plus a structured payload. The
resolver writes both into the State Store so later acts can reference them.

    McpPlatform   runs each command as a tool call on an MCP ClientSession.
                  Structured tool output becomes the payload.

Platforms are looked up in an explicit PlatformRegistry built at startup. Each
configured platform is an MCP server, started as a stdio subprocess
("command" + "args") or reached over streamable HTTP ("url"):

    "platforms": {
        "discord": {"command": "discord-mcp", "args": ["--guild", "123"]},
        "notes":   {"url": "http://localhost:9000/mcp"}
    }

Before a platform command runs, the security gate is asked whether the actor
may perform the action. PolicyGate matches actions against per-actor fnmatch
patterns over "<platform>.<command>" actions ("discord.post_message",
"discord.*", "processor.dedup", "*").
"""

from __future__ import annotations

import fnmatch
import json
import logging
from collections.abc import Iterable, Mapping
from contextlib import AsyncExitStack
from typing import Any, Protocol

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from pydantic import BaseModel, Field, model_validator

from storyloom.errors import PlatformCommandError, RegistryError

logger = logging.getLogger(__name__)


class CommandResult(BaseModel):
    summary: str
    payload: dict[str, Any] = Field(default_factory=dict)


class Platform(Protocol):
    async def execute(self, command: str, arguments: dict[str, Any]) -> CommandResult: ...


class PlatformRegistry:
    def __init__(self, platforms: Mapping[str, Platform] | None = None) -> None:
        self._platforms: dict[str, Platform] = {}
        for name, platform in (platforms or {}).items():
            self.register(name, platform)

    def register(self, name: str, platform: Platform) -> None:
        if name in self._platforms:
            raise RegistryError(f"Platform {name!r} is already registered")
        self._platforms[name] = platform

    def get(self, name: str) -> Platform:
        try:
            return self._platforms[name]
        except KeyError:
            raise PlatformCommandError(f"Unknown platform {name!r}") from None

    def names(self) -> list[str]:
        return list(self._platforms)


# ---------------------------------------------------------------------------
# MCP binding
# ---------------------------------------------------------------------------

class McpServerSettings(BaseModel):
    command: str = ""
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None
    url: str = ""

    @model_validator(mode="after")
    def _one_transport(self) -> McpServerSettings:
        if bool(self.command) == bool(self.url):
            raise ValueError("set exactly one of command or url")
        return self


async def connect_mcp(settings: McpServerSettings, stack: AsyncExitStack) -> ClientSession:
    """Open an initialized session. The transport lives until `stack` closes."""
    if settings.url:
        read, write, _ = await stack.enter_async_context(streamablehttp_client(settings.url))
    else:
        params = StdioServerParameters(command=settings.command, args=settings.args, env=settings.env)
        read, write = await stack.enter_async_context(stdio_client(params))
    session = await stack.enter_async_context(ClientSession(read, write))
    await session.initialize()
    return session


class McpPlatform:
    """Runs commands as tools on a connected MCP session."""

    def __init__(self, session: ClientSession) -> None:
        self._session = session

    async def execute(self, command: str, arguments: dict[str, Any]) -> CommandResult:
        logger.debug("mcp call tool=%s args=%s", command, sorted(arguments))
        try:
            result = await self._session.call_tool(command, arguments)
        except Exception as e:
            raise PlatformCommandError(f"MCP tool {command!r} failed: {e}") from e

        text = "\n".join(
            getattr(c, "text", "") for c in result.content if getattr(c, "type", "") == "text"
        )
        if result.isError:
            raise PlatformCommandError(f"MCP tool {command!r} returned an error: {text}")

        payload = getattr(result, "structuredContent", None)
        if payload is None:
            try:
                payload = json.loads(text) if text else {}
            except ValueError:
                payload = {"text": text}
        if not isinstance(payload, dict):
            payload = {"result": payload}
        return CommandResult(summary=text or f"{command} ok", payload=payload)


# ---------------------------------------------------------------------------
# Security gate
# ---------------------------------------------------------------------------

class Decision(BaseModel):
    allowed: bool
    reason: str = ""


class SecurityGate(Protocol):
    def authorize(self, actor: str, action: str) -> Decision: ...


class AllowAllGate:
    def authorize(self, actor: str, action: str) -> Decision:
        return Decision(allowed=True)


class PolicyGate:
    """Allows an action only when one of the actor's patterns matches it.

    Actors not named in the policy fall back to the "*" entry, if any.
    """

    def __init__(self, allowed: Mapping[str, Iterable[str]]) -> None:
        self._allowed = {actor: set(patterns) for actor, patterns in allowed.items()}

    def authorize(self, actor: str, action: str) -> Decision:
        patterns = self._allowed.get(actor, self._allowed.get("*", set()))
        if any(fnmatch.fnmatchcase(action, p) for p in patterns):
            return Decision(allowed=True)
        return Decision(allowed=False, reason=f"no policy allows {action!r} for {actor!r}")
