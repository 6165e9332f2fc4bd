from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml


def dump_yaml(data: Mapping[str, Any], *, sort_keys: bool = False) -> str:
    text = yaml.safe_dump(
        dict(data),
        sort_keys=sort_keys,
        default_flow_style=False,
        allow_unicode=False,
        indent=2,
    )
    if not text.endswith("\n"):
        text += "\n"
    return text


def dump_documents(documents: Iterable[Mapping[str, Any]]) -> str:
    """Serialize several resource documents as one multi-document YAML stream."""
    return "---\n".join(dump_yaml(document) for document in documents)


def write_yaml(path: str | Path, data: Mapping[str, Any]) -> Path:
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(dump_yaml(data), encoding="utf-8")
    return out_path
