from __future__ import annotations

import datetime as _dt
import hashlib
import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from viewrender.gen.types import GenerationRequest


def file_sha256(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def now_utc_iso() -> str:
    return _dt.datetime.now(tz=_dt.timezone.utc).isoformat().replace("+00:00", "Z")


def result_timestamp() -> str:
    return _dt.datetime.now().strftime("%Y%m%d_%H%M%S_%f")


def sidecar_path(out_path: Path) -> Path:
    return out_path.with_suffix(out_path.suffix + ".json")


def write_sidecar(out_path: Path, payload: dict[str, Any]) -> Path:
    sidecar = sidecar_path(out_path)
    sidecar.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    return sidecar


def append_jsonl(log_path: Path, payload: dict[str, Any]) -> None:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(payload, ensure_ascii=False) + "\n")


def write_result_sidecar(
    out_path: Path,
    provider_id: str,
    request: GenerationRequest,
    extra: dict[str, Any],
) -> Path:
    payload = {
        "provider_id": provider_id,
        "source_image": str(request.source_image_path),
        "reference_images": [str(p) for p in request.reference_image_paths],
        "prompt": request.prompt,
        "negative_prompt": request.negative_prompt,
        "params": dict(request.params),
        "output_hash": file_sha256(out_path)[:16],
        "created_at": now_utc_iso(),
        **extra,
    }
    return write_sidecar(out_path, payload)


def log_render_run(
    results_dir: Path,
    provider_id: str,
    request: GenerationRequest,
    result_path: Path,
    conditioning: list[str],
) -> None:
    payload = {
        "timestamp": now_utc_iso(),
        "provider_id": provider_id,
        "source_image": str(request.source_image_path),
        "prompt": request.prompt,
        "conditioning": conditioning,
        "output_path": str(result_path),
    }
    append_jsonl(results_dir / "renders.jsonl", payload)
