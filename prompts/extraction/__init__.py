"""Loading and assembly of the per-document-type extraction prompts."""
from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from string import Template
from typing import Dict, Iterable, Mapping

_PROMPT_DIR = Path(__file__).resolve().parent
_BASE_FILE = "base.json"


@dataclass(frozen=True)
class BasePrompt:
    prompt_version: str
    instructions: str
    response_schema: str


@dataclass(frozen=True)
class ExtractionPrompt:
    """Focus instructions for one document type."""

    id: str
    document_type: str
    label: str
    focus: str


def _join(value: object) -> str:
    if isinstance(value, list):
        return "\n".join(str(line) for line in value)
    return str(value)


def _read(path: Path, required: Iterable[str]) -> Dict[str, object]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    missing = sorted(set(required) - payload.keys())
    if missing:
        raise ValueError(f"Prompt file {path.name} missing keys: {', '.join(missing)}")
    return payload


@lru_cache(maxsize=1)
def load_base_prompt(directory: Path | None = None) -> BasePrompt:
    base_dir = Path(directory) if directory else _PROMPT_DIR
    payload = _read(base_dir / _BASE_FILE, ("prompt_version", "instructions", "response_schema"))
    return BasePrompt(
        prompt_version=str(payload["prompt_version"]),
        instructions=_join(payload["instructions"]),
        response_schema=_join(payload["response_schema"]),
    )


@lru_cache(maxsize=1)
def load_prompts(directory: Path | None = None) -> Mapping[str, ExtractionPrompt]:
    base_dir = Path(directory) if directory else _PROMPT_DIR
    prompts: Dict[str, ExtractionPrompt] = {}
    for path in sorted(base_dir.glob("*.json")):
        if path.name == _BASE_FILE:
            continue
        payload = _read(path, ("id", "document_type", "label", "focus"))
        prompt = ExtractionPrompt(
            id=str(payload["id"]),
            document_type=str(payload["document_type"]).lower(),
            label=str(payload["label"]),
            focus=_join(payload["focus"]),
        )
        if prompt.document_type in prompts:
            raise ValueError(f"Duplicate extraction prompt for document type: {prompt.document_type}")
        prompts[prompt.document_type] = prompt
    if not prompts:
        raise RuntimeError(f"No extraction prompt definitions found in {base_dir}")
    return prompts


def get_prompt(document_type: str) -> ExtractionPrompt:
    prompts = load_prompts()
    key = str(document_type).lower()
    if key not in prompts:
        raise KeyError(f"Unknown document type '{document_type}'. Available: {', '.join(sorted(prompts))}")
    return prompts[key]


def build_chunk_prompt(document_type: str, chunk_text: str, chunk_index: int, total_chunks: int) -> str:
    """Full prompt for one chunk: rules, type focus, the text and the response schema."""

    base = load_base_prompt()
    focus = get_prompt(document_type).focus
    instructions = Template(base.instructions).safe_substitute(
        chunk_number=chunk_index + 1,
        total_chunks=total_chunks,
    )
    return (
        f"{instructions}\n\n"
        f"{focus}\n\n"
        f"TEXT ZU ANALYSIEREN:\n---\n{chunk_text}\n---\n\n"
        f"Antworte mit diesem JSON-Schema:\n{base.response_schema}\n\n"
        "Gib NUR das JSON zurück."
    )


__all__ = [
    "BasePrompt",
    "ExtractionPrompt",
    "load_base_prompt",
    "load_prompts",
    "get_prompt",
    "build_chunk_prompt",
]
