"""
JSON utilities for cleaning LLM responses and decoding relationship properties.
"""

import json
from typing import Any, Dict, Optional


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

    return response.strip()


def decode_properties(properties: Optional[str]) -> Dict[str, Any]:
    """Decode a relationship's opaque properties blob.

    Args:
        properties: JSON object string or None

    Returns:
        Decoded dict, empty when the blob is missing, malformed or not an object
    """
    if not properties:
        return {}
    try:
        decoded = json.loads(properties)
    except (TypeError, json.JSONDecodeError):
        return {}
    return decoded if isinstance(decoded, dict) else {}


def encode_properties(properties: Dict[str, Any]) -> str:
    """Encode a properties dict as a compact JSON blob."""
    return json.dumps(properties, separators=(',', ':'), sort_keys=True)
