from __future__ import annotations

import asyncio
import json
import re

import structlog
from json_repair import repair_json
from pydantic import BaseModel

from acai.agent.model_client import ModelClient
from acai.infra.errors import NoSuchToolError, ToolArgumentsError
from acai.tools.base import BaseTool, ToolCall

logger = structlog.get_logger()

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def _extract_json(text: str) -> str:
    """Body of the first fenced block if there is one, else the stripped text."""
    match = _FENCE.search(text)
    return (match.group(1) if match else text).strip()


def build_repair_prompt(call: ToolCall, tool: BaseTool, error: Exception) -> str:
    return "\n".join([
        f'The model tried to call the tool "{call.tool_name}" with the following arguments:',
        call.raw_arguments,
        "The tool accepts the following schema:",
        json.dumps(tool.parameters),
        "Validation failed with:",
        str(error),
        "Please fix the arguments. Reply with the corrected arguments as a single JSON object and nothing else.",
    ])


class ToolCallRepairer:
    """Rewrites malformed tool arguments.

    The raw arguments are first run through json_repair and validated against
    the tool's model; only if that fails is the auxiliary model asked. One
    attempt per call; the dispatcher never asks twice.
    """

    def __init__(
        self,
        model_client: ModelClient,
        model: str,
        *,
        temperature: float | None = 0.0,
    ) -> None:
        self._model_client = model_client
        self._model = model
        self._temperature = temperature

    async def repair(self, call: ToolCall, tool: BaseTool | None, error: Exception) -> ToolCall | None:
        """Try a local JSON fix first, then the auxiliary model. None if both fail."""
        if isinstance(error, NoSuchToolError) or tool is None:
            return None

        logger.warning("tool_call_repair_attempt", tool_name=call.tool_name, tool_call_id=call.id)
        arguments = self._repair_locally(call, tool)
        if arguments is not None:
            logger.info("tool_call_repaired", tool_name=call.tool_name, tool_call_id=call.id, via="local")
            return _with_arguments(call, arguments)

        try:
            reply = await self._model_client.chat(
                [{"role": "user", "content": build_repair_prompt(call, tool, error)}],
                self._model,
                temperature=self._temperature,
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("tool_call_repair_failed", tool_name=call.tool_name)
            return None

        candidate = _extract_json(reply or "")
        try:
            arguments = tool.parse_arguments(candidate)
        except ToolArgumentsError as e:
            logger.warning(
                "tool_call_repair_invalid",
                tool_name=call.tool_name,
                error=str(e)[:200],
            )
            return None

        logger.info("tool_call_repaired", tool_name=call.tool_name, tool_call_id=call.id, via="model")
        return _with_arguments(call, arguments)

    def _repair_locally(self, call: ToolCall, tool: BaseTool) -> BaseModel | None:
        try:
            candidate = repair_json(call.raw_arguments)
            return tool.parse_arguments(candidate)
        except ToolArgumentsError as e:
            logger.debug("tool_call_local_repair_invalid", tool_name=call.tool_name, error=str(e)[:200])
        except Exception:
            logger.exception("tool_call_local_repair_failed", tool_name=call.tool_name)
        return None


def _with_arguments(call: ToolCall, arguments: BaseModel) -> ToolCall:
    return ToolCall(
        id=call.id,
        tool_name=call.tool_name,
        raw_arguments=arguments.model_dump_json(),
    )
