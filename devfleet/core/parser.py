"""Parsing of the summary an agent prints when it finishes.

Agents are asked to end their output with a fenced block:

    ```json
    {"status": "success", "summary": "...", "files_modified": ["..."]}
    ```

Only explicit ```json blocks count, and the last one wins.
"""

import json
import logging
import re

from pydantic import ValidationError

from devfleet.core.models import AgentSummary

logger = logging.getLogger(__name__)

_JSON_BLOCK = re.compile(r"```json\s*([\s\S]*?)\s*```")
_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")

SUMMARY_INSTRUCTIONS = """\
When you are done, end your reply with a fenced JSON block:

```json
{"status": "success" or "failure", "summary": "<one paragraph>", "files_modified": ["<path>", ...]}
```
"""


class ParsingError(Exception):
    """No usable JSON block in the agent output."""

    pass


class InvalidOutputError(Exception):
    """JSON block does not match the summary schema."""

    pass


def strip_ansi(text: str) -> str:
    return _ANSI_ESCAPE.sub("", text)


def extract_json_block(raw_output: str) -> str | None:
    """Return the content of the last ```json block, or None."""
    matches = _JSON_BLOCK.findall(strip_ansi(raw_output))
    if not matches:
        return None
    return matches[-1].strip()


def parse_agent_summary(raw_output: str) -> AgentSummary:
    """Extract and validate the final summary.

    Raises:
        ParsingError: If no JSON block is found or it is not valid JSON.
        InvalidOutputError: If the JSON does not match AgentSummary.
    """
    json_str = extract_json_block(raw_output)
    if not json_str:
        raise ParsingError("No ```json block found in agent output")
    try:
        return AgentSummary.model_validate_json(json_str)
    except ValidationError as e:
        error_str = str(e)
        if "json_invalid" in error_str.lower():
            raise ParsingError(f"Invalid JSON in output: {e}") from e
        raise InvalidOutputError(f"Output doesn't match AgentSummary schema: {e}") from e
    except json.JSONDecodeError as e:
        raise ParsingError(f"Invalid JSON in output: {e}") from e


def find_agent_summary(raw_output: str) -> AgentSummary | None:
    """Like parse_agent_summary, but None when the output has no valid summary."""
    try:
        return parse_agent_summary(raw_output)
    except (ParsingError, InvalidOutputError) as e:
        logger.debug(f"No agent summary: {e}")
        return None
