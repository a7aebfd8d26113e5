#!/usr/bin/env python3
"""
bwm_converter.py
================

Batch inspector for Lionhead BWM model files. Every model found under
``--bwm-root`` is decoded with ``bwm_reader`` and written as a JSON summary
(materials, meshes and their material refs, entities, stride, counts,
cleave points) mirroring the source directory layout.

Usage:
    python3 bwm_converter.py \\
        --bwm-root Data/Art/models \\
        --output-root out/models \\
        --force --verbose \\
        --report out/reports/models_report.json
"""

from __future__ import annotations

import argparse
import json
import logging
import math
import os
import sys
import time
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field, fields as dataclass_fields
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from bwm_reader import (
    HEADER_PREFIX_SIZE,
    MAGIC_FILE_IDENTIFIER,
    BwmParseError,
    Model,
    Point,
    read_bwm,
)


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------

def _json_point(point: Point) -> List[Optional[float]]:
    # JSON has no NaN/inf; the decoder keeps whatever floats the file holds.
    return [value if math.isfinite(value) else None for value in point.as_tuple()]


def bwm_to_summary(model: Model) -> Dict[str, object]:
    """Return a JSON-serialisable view of a decoded model."""
    return {
        "version": int(model.version),
        "payload_size": model.payload_size,
        "payload_size_2": model.payload_size_2,
        "counts": {
            "materials": len(model.materials),
            "meshes": len(model.meshes),
            "bones": model.bone_count,
            "entities": len(model.entities),
            "unknown_a": model.unknown_a_count,
            "unknown_b": model.unknown_b_count,
            "vertices": len(model.vertices),
            "indices": len(model.indices),
        },
        "vertex_stride": model.vertex_stride,
        "stride_fields": [
            {"id": f.id, "format": f.format, "size": f.size} for f in model.stride_fields
        ],
        "materials": [
            {
                "diffuse_map": m.diffuse_map,
                "light_map": m.light_map,
                "unknown3": m.unknown3,
                "specular_map": m.specular_map,
                "unknown5": m.unknown5,
                "normal_map": m.normal_map,
                "type": m.type,
            }
            for m in model.materials
        ],
        "meshes": [
            {
                "id": mesh.id,
                "name": mesh.name,
                "faces_count": mesh.faces_count,
                "indices_pointer": mesh.indices_pointer,
                "material_refs": [
                    {
                        "material_definition": ref.material_definition,
                        "indices_offset": ref.indices_offset,
                        "indices_size": ref.indices_size,
                        "vertex_offset": ref.vertex_offset,
                        "vertex_size": ref.vertex_size,
                        "faces_offset": ref.faces_offset,
                        "faces_size": ref.faces_size,
                        "unknown": ref.unknown,
                    }
                    for ref in mesh.material_refs
                ],
            }
            for mesh in model.meshes
        ],
        "entities": [
            {
                "name": e.name,
                "position": _json_point(e.position),
                "unknown1": _json_point(e.unknown1),
                "unknown2": _json_point(e.unknown2),
                "unknown3": _json_point(e.unknown3),
            }
            for e in model.entities
        ],
        "cleave_points": (
            None if model.cleave_points is None
            else [_json_point(p) for p in model.cleave_points]
        ),
    }


# ---------------------------------------------------------------------------
# Batch conversion
# ---------------------------------------------------------------------------

@dataclass
class ConversionStats:
    total_found: int = 0
    converted: int = 0
    skipped_non_model: int = 0
    skipped_existing: int = 0
    skipped_corrupt: int = 0
    failed: int = 0
    failures: List[Dict] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return self.skipped_non_model + self.skipped_existing + self.skipped_corrupt


def merge_stats(target: ConversionStats, source: ConversionStats) -> None:
    """Merge *source* into *target* by summing int fields and extending list fields."""
    for f in dataclass_fields(ConversionStats):
        src_val = getattr(source, f.name)
        if isinstance(src_val, int):
            setattr(target, f.name, getattr(target, f.name) + src_val)
        elif isinstance(src_val, list):
            getattr(target, f.name).extend(src_val)


def discover_bwm_files(root: Path) -> List[Path]:
    return sorted(
        (path for path in root.rglob("*") if path.is_file() and path.suffix.lower() == ".bwm"),
        key=lambda path: path.as_posix().lower(),
    )


def output_path_for(source: Path, bwm_root: Path, output_root: Path) -> Path:
    return output_root / source.relative_to(bwm_root).with_suffix(".json")


def convert_single_bwm(
    source: Path,
    output_path: Path,
    force: bool,
    stats: ConversionStats,
) -> None:
    """Decode a single BWM file and write its JSON summary."""
    stats.total_found += 1

    # Check magic without full parse
    try:
        with open(source, "rb") as f:
            header = f.read(len(MAGIC_FILE_IDENTIFIER))
        file_size = source.stat().st_size
    except OSError as exc:
        stats.failed += 1
        stats.failures.append({"source": str(source), "error": str(exc)})
        logging.error("Cannot read %s: %s", source, exc)
        return
    if header != MAGIC_FILE_IDENTIFIER:
        stats.skipped_non_model += 1
        logging.debug("Skipping non-BWM file: %s (magic: %r)", source, header)
        return

    if not force and output_path.exists() and output_path.stat().st_size > 0:
        stats.skipped_existing += 1
        logging.debug("Skipping existing: %s", output_path)
        return

    try:
        model = read_bwm(source)
    except BwmParseError as exc:
        stats.skipped_corrupt += 1
        stats.failures.append({"source": str(source), "error": str(exc), "type": "parse"})
        logging.warning("Parse error for %s: %s", source, exc)
        return
    except Exception as exc:
        stats.failed += 1
        stats.failures.append({"source": str(source), "error": str(exc), "type": "unexpected"})
        logging.error("Unexpected error parsing %s: %s", source, exc)
        return

    if model.payload_size != file_size - HEADER_PREFIX_SIZE:
        logging.debug(
            "Header payload size %d does not match file (%d bytes after header) in %s",
            model.payload_size, file_size - HEADER_PREFIX_SIZE, source,
        )

    payload = json.dumps(bwm_to_summary(model), indent=2, allow_nan=False).encode("utf-8")
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(payload)
    stats.converted += 1
    logging.debug("Converted %s -> %s (%d bytes)", source, output_path, len(payload))


def _bwm_convert_worker(source: Path, output_path: Path, force: bool) -> ConversionStats:
    """Worker function for parallel BWM conversion. Returns local stats."""
    stats = ConversionStats()
    try:
        convert_single_bwm(source, output_path, force, stats)
    except Exception as exc:  # noqa: BLE001
        stats.failed += 1
        stats.failures.append({"source": str(source), "error": str(exc), "type": "worker"})
        logging.error("BWM worker error for %s: %s", source, exc)
    return stats


def _log_progress(done: int, total: int, stats: ConversionStats, start_time: float) -> None:
    if done % 500 == 0 or done == total:
        logging.info(
            "Progress: %d/%d (%.1f%%) converted=%d skipped=%d failed=%d [%.1fs]",
            done, total, 100.0 * done / total,
            stats.converted, stats.skipped, stats.failed,
            time.time() - start_time,
        )


def convert_all(
    bwm_root: Path,
    output_root: Path,
    force: bool,
    dry_run: bool,
    report_path: Optional[Path],
    workers: int = 1,
) -> ConversionStats:
    """Convert all BWM files found under bwm_root."""
    stats = ConversionStats()

    bwm_files = discover_bwm_files(bwm_root)
    total = len(bwm_files)
    logging.info("Found %d BWM files under %s (workers=%d)", total, bwm_root, workers)

    jobs: List[Tuple[Path, Path]] = [
        (path, output_path_for(path, bwm_root, output_root)) for path in bwm_files
    ]

    if dry_run:
        for src, out in jobs:
            logging.info("[DRY-RUN] Would convert %s -> %s", src, out)
        stats.total_found = total
        return stats

    start_time = time.time()

    if workers <= 1:
        for idx, (src, out) in enumerate(jobs):
            convert_single_bwm(src, out, force, stats)
            _log_progress(idx + 1, total, stats, start_time)
    else:
        chunksize = max(1, total // (workers * 4))
        with ProcessPoolExecutor(max_workers=workers) as executor:
            results = executor.map(
                _bwm_convert_worker,
                [src for src, _ in jobs],
                [out for _, out in jobs],
                [force] * total,
                chunksize=chunksize,
            )
            for completed, worker_stats in enumerate(results, start=1):
                merge_stats(stats, worker_stats)
                _log_progress(completed, total, stats, start_time)

    logging.info(
        "Conversion complete in %.1fs: %d converted, %d skipped "
        "(non_model=%d, existing=%d, corrupt=%d), %d failed",
        time.time() - start_time, stats.converted, stats.skipped,
        stats.skipped_non_model, stats.skipped_existing, stats.skipped_corrupt,
        stats.failed,
    )

    if report_path:
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report = {
            "total_found": stats.total_found,
            "converted": stats.converted,
            "skipped_non_model": stats.skipped_non_model,
            "skipped_existing": stats.skipped_existing,
            "skipped_corrupt": stats.skipped_corrupt,
            "failed": stats.failed,
            "failures": stats.failures,
        }
        report_path.write_text(json.dumps(report, indent=2))
        logging.info("Report written to %s", report_path)

    return stats


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Decode Lionhead BWM model files into JSON summaries."
    )
    parser.add_argument(
        "--bwm-root", type=Path, required=True,
        help="Root directory containing BWM files",
    )
    parser.add_argument(
        "--output-root", type=Path, required=True,
        help="Output directory for JSON summaries",
    )
    parser.add_argument("--force", action="store_true", help="Force reconversion")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be done")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--report", type=Path, default=None,
        help="Path for JSON conversion report",
    )
    parser.add_argument(
        "--workers", type=int, default=os.cpu_count() or 4,
        help="Number of parallel worker processes (default: number of CPUs).",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(message)s",
        datefmt="%H:%M:%S",
    )

    if not args.bwm_root.is_dir():
        logging.error("BWM root directory not found: %s", args.bwm_root)
        return 1

    stats = convert_all(
        bwm_root=args.bwm_root,
        output_root=args.output_root,
        force=args.force,
        dry_run=args.dry_run,
        report_path=args.report,
        workers=max(1, args.workers),
    )

    if stats.failed > 0:
        logging.warning("%d files failed conversion", stats.failed)

    return 0


if __name__ == "__main__":
    sys.exit(main())
