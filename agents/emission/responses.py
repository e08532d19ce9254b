"""Ordered extraction rules for the external service's response bodies.

The service answers with several body shapes depending on endpoint and
version. Each kind of value we need (error message, document identifier,
artifacts) is resolved by walking one ordered rule table; the first rule that
yields a non-empty value wins.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

UNKNOWN_ERROR = "unknown error"

Rule = Tuple[str, Callable[[Mapping[str, Any]], Optional[str]]]


def dig(body: Any, path: str) -> Any:
    """Follow a dotted ``path`` through nested mappings; ``None`` when absent."""
    current = body
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def _text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip()
    return text or None


# Error messages


def _render_error_entry(entry: Any) -> str:
    if isinstance(entry, Mapping):
        message = entry.get("message") or entry.get("detail") or json.dumps(entry, default=str)
        field = entry.get("field")
        return f"[{field}] {message}" if field else str(message)
    return str(entry)


def _render_field_map(errors: Mapping[str, Any]) -> str:
    parts = []
    for field, messages in errors.items():
        if isinstance(messages, (list, tuple)):
            rendered = ", ".join(str(m) for m in messages)
        elif isinstance(messages, Mapping):
            rendered = _render_field_map(messages)
        else:
            rendered = str(messages)
        parts.append(f"{field}: {rendered}")
    return "; ".join(parts)


def _error_string(body: Mapping[str, Any]) -> Optional[str]:
    return body.get("error") if isinstance(body.get("error"), str) and body["error"] else None


def _error_object(body: Mapping[str, Any]) -> Optional[str]:
    error = body.get("error")
    if not isinstance(error, Mapping):
        return None
    return _text(error.get("message")) or json.dumps(error, default=str)


def _message(body: Mapping[str, Any]) -> Optional[str]:
    return _text(body.get("message"))


def _errors_list(body: Mapping[str, Any]) -> Optional[str]:
    errors = body.get("errors")
    if isinstance(errors, list) and errors:
        return ", ".join(_render_error_entry(entry) for entry in errors)
    return None


def _errors_map(body: Mapping[str, Any]) -> Optional[str]:
    errors = body.get("errors")
    if isinstance(errors, Mapping) and errors:
        return _render_field_map(errors)
    return None


def _validation_errors(body: Mapping[str, Any]) -> Optional[str]:
    errors = body.get("validation_errors")
    if isinstance(errors, Mapping) and errors:
        return f"Validation errors: {_render_field_map(errors)}"
    return None


def _detail(body: Mapping[str, Any]) -> Optional[str]:
    return _text(body.get("detail"))


def _details_list(body: Mapping[str, Any]) -> Optional[str]:
    details = body.get("details")
    if isinstance(details, list) and details:
        return ", ".join(_render_error_entry(entry) for entry in details)
    return None


def _code_description(body: Mapping[str, Any]) -> Optional[str]:
    if body.get("code") is not None and _text(body.get("description")):
        return f"{body['code']}: {body['description']}"
    return None


ERROR_MESSAGE_RULES: Sequence[Rule] = (
    ("error", _error_string),
    ("error.message", _error_object),
    ("message", _message),
    ("errors[]", _errors_list),
    ("errors{}", _errors_map),
    ("validation_errors", _validation_errors),
    ("detail", _detail),
    ("details[]", _details_list),
    ("code+description", _code_description),
)


def extract_error_message(body: Any) -> str:
    """Human-readable message from an error body of any known shape."""
    if body is None or body == "" or body == {}:
        return UNKNOWN_ERROR
    if isinstance(body, str):
        return body.strip() or UNKNOWN_ERROR
    if not isinstance(body, Mapping):
        return json.dumps(body, default=str)
    for _, rule in ERROR_MESSAGE_RULES:
        message = rule(body)
        if message:
            return message
    return json.dumps(body, default=str)


# Success bodies


def document_key(doc_type: str) -> str:
    """Key of the nested document object in success bodies."""
    return "credit_note" if doc_type == "credit_note" else "bill"


def identifier_paths(doc_type: str) -> List[str]:
    key = document_key(doc_type)
    return ["number", f"data.{key}.number", f"data.{key}.id", "id", "document_id", "uuid"]


ARTIFACT_FIELDS: Dict[str, Tuple[str, ...]] = {
    "cufe": ("cufe", "cude"),
    "qr": ("qr", "qr_code"),
    "public_url": ("public_url",),
    "pdf_url": ("pdf_url",),
    "xml_url": ("xml_url",),
}


def artifact_paths(doc_type: str, artifact: str) -> List[str]:
    key = document_key(doc_type)
    names = ARTIFACT_FIELDS[artifact]
    return [f"data.{key}.{name}" for name in names] + list(names)


def first_value(body: Any, paths: Sequence[str]) -> Optional[str]:
    """First non-empty value among ``paths``, coerced to a trimmed string."""
    for path in paths:
        value = _text(dig(body, path))
        if value:
            return value
    return None


def extract_identifier(body: Any, doc_type: str) -> Optional[str]:
    return first_value(body, identifier_paths(doc_type))


def extract_artifacts(body: Any, doc_type: str) -> Dict[str, Optional[str]]:
    return {name: first_value(body, artifact_paths(doc_type, name)) for name in ARTIFACT_FIELDS}


def extract_bill_id(body: Any) -> Optional[int]:
    """Numeric invoice id the service expects as ``bill_id`` on credit notes."""
    for path in ("data.bill.id", "bill.id", "data.id", "id"):
        value = dig(body, path)
        if isinstance(value, bool) or value is None:
            continue
        try:
            return int(str(value).strip())
        except ValueError:
            continue
    return None
