"""
JSON utilities for cleaning LLM responses.
"""

import json
from typing import Any, Optional


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    # Remove ```json and ``` markers
    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    response = response.strip()

    # Models sometimes wrap the object in prose; keep the outermost braces
    if response and response[0] not in '{[':
        start = response.find('{')
        end = response.rfind('}')
        if start != -1 and end > start:
            response = response[start:end + 1]

    return response


def parse_json_object(response: str) -> Optional[dict]:
    """Parse an LLM response into a dict, or None when it is not a JSON object."""
    try:
        parsed: Any = json.loads(clean_json_response(response))
    except (json.JSONDecodeError, TypeError):
        return None
    return parsed if isinstance(parsed, dict) else None
