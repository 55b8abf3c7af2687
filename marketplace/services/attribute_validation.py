"""
Validation of client answers against a service type's Q&A attributes.
"""
from typing import Any, Dict, List, Optional

from marketplace.core.errors import ValidationFailed


def validate_attribute_responses(attributes: List[Dict[str, Any]], responses: List[Dict[str, Any]]) -> List[str]:
    """
    Check ``responses`` (``[{question, answer}]``) against ``attributes``.

    Returns the list of error messages; empty when everything is valid.
    """
    if not attributes:
        return []

    answers = {r.get("question"): r.get("answer") for r in (responses or [])}
    errors = []
    for attribute in attributes:
        error = _validate_single(attribute, answers.get(attribute.get("question")))
        if error:
            errors.append(error)
    return errors


def ensure_valid_attribute_responses(attributes: List[Dict[str, Any]], responses: List[Dict[str, Any]]) -> None:
    """Raise ValidationFailed carrying every problem found."""
    errors = validate_attribute_responses(attributes, responses)
    if errors:
        raise ValidationFailed(errors)


def is_blank(answer: Any) -> bool:
    if answer is None:
        return True
    if isinstance(answer, str):
        return not answer.strip()
    if isinstance(answer, (list, tuple)):
        return len(answer) == 0
    return False


def _validate_single(attribute: Dict[str, Any], answer: Any) -> Optional[str]:
    question = attribute.get("question")

    if is_blank(answer):
        if attribute.get("required"):
            return f'"{question}" is required'
        return None

    kind = attribute.get("type", "text")
    options = attribute.get("options")

    if kind == "select":
        if options and answer not in options:
            return f'"{question}" must be one of: {", ".join(options)}'

    elif kind == "multiselect":
        if not isinstance(answer, (list, tuple)):
            return f'"{question}" must be a list'
        if options:
            invalid = [opt for opt in answer if opt not in options]
            if invalid:
                return f'"{question}" contains invalid options: {", ".join(map(str, invalid))}'

    elif kind == "number":
        try:
            value = float(answer)
        except (TypeError, ValueError):
            return f'"{question}" must be a valid number'
        if attribute.get("min") is not None and value < attribute["min"]:
            return f'"{question}" must be at least {attribute["min"]}'
        if attribute.get("max") is not None and value > attribute["max"]:
            return f'"{question}" must be at most {attribute["max"]}'

    elif kind in ("text", "textarea"):
        if not isinstance(answer, str):
            return f'"{question}" must be a string'

    return None
