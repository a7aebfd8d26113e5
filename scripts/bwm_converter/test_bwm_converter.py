#!/usr/bin/env python3
import io
import json
import tempfile
import unittest
from pathlib import Path
import sys


SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

import bwm_converter as converter
import bwm_reader as reader
from bwm_fixtures import entity, triangle_model


def _decode(data: bytes) -> reader.Model:
    return reader.read_bwm_stream(io.BytesIO(data))


class SummaryTests(unittest.TestCase):
    def test_summary_is_json_serialisable(self) -> None:
        summary = converter.bwm_to_summary(_decode(triangle_model(bone_count=2)))
        payload = json.loads(json.dumps(summary, allow_nan=False))
        self.assertEqual(payload["version"], 6)
        self.assertEqual(payload["counts"]["bones"], 2)
        self.assertEqual(payload["counts"]["vertices"], 3)
        self.assertEqual(payload["vertex_stride"], 32)
        self.assertEqual(payload["materials"][0]["diffuse_map"], "Data\\Textures\\bark.dds")
        self.assertEqual(payload["meshes"][0]["material_refs"][0]["indices_size"], 3)
        self.assertEqual(payload["entities"][0]["position"], [1.0, 2.0, 3.0])
        self.assertEqual(payload["cleave_points"], [[5.0, 6.0, 7.0]])

    def test_summary_of_v5_has_null_cleave_points(self) -> None:
        summary = converter.bwm_to_summary(_decode(triangle_model(version=5)))
        self.assertIsNone(summary["cleave_points"])

    def test_non_finite_floats_become_null(self) -> None:
        data = triangle_model(
            entities=[entity("odd", (float("nan"), float("inf"), 1.0))],
            cleave_points=[(float("-inf"), 0.0, 2.0)],
        )
        summary = converter.bwm_to_summary(_decode(data))
        payload = json.loads(json.dumps(summary, allow_nan=False))
        self.assertEqual(payload["entities"][0]["position"], [None, None, 1.0])
        self.assertEqual(payload["cleave_points"], [[None, 0.0, 2.0]])


class BatchConversionTests(unittest.TestCase):
    def test_convert_single_bwm_counts_outcomes(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            good = root / "good.bwm"
            good.write_bytes(triangle_model())
            corrupt = root / "corrupt.bwm"
            corrupt.write_bytes(triangle_model(version=9))
            other = root / "other.bwm"
            other.write_bytes(b"not a model at all")

            stats = converter.ConversionStats()
            out = root / "out" / "good.json"
            converter.convert_single_bwm(good, out, False, stats)
            self.assertEqual(json.loads(out.read_text())["meshes"][0]["name"], "trunk")
            converter.convert_single_bwm(good, out, False, stats)
            with self.assertLogs(level="WARNING"):
                converter.convert_single_bwm(corrupt, root / "out" / "corrupt.json", False, stats)
            converter.convert_single_bwm(other, root / "out" / "other.json", False, stats)

        self.assertEqual(stats.total_found, 4)
        self.assertEqual(stats.converted, 1)
        self.assertEqual(stats.skipped_existing, 1)
        self.assertEqual(stats.skipped_corrupt, 1)
        self.assertEqual(stats.skipped_non_model, 1)
        self.assertEqual(stats.failures[0]["type"], "parse")
        self.assertIn("Unsupported BWM version", stats.failures[0]["error"])

    def test_huge_declared_count_is_a_corrupt_skip(self) -> None:
        data = bytearray(triangle_model(version=5))
        data[180:184] = b"\xFF\xFF\xFF\xFF"
        with tempfile.TemporaryDirectory() as temp_dir:
            source = Path(temp_dir) / "huge.bwm"
            source.write_bytes(bytes(data))
            stats = converter.ConversionStats()
            with self.assertLogs(level="WARNING"):
                converter.convert_single_bwm(source, Path(temp_dir) / "huge.json", False, stats)

        self.assertEqual(stats.skipped_corrupt, 1)
        self.assertEqual(stats.failed, 0)

    def test_convert_all_writes_json_and_report(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            models = root / "models" / "trees"
            models.mkdir(parents=True)
            (models / "M_Tree.BWM").write_bytes(triangle_model())
            report = root / "reports" / "report.json"

            stats = converter.convert_all(
                bwm_root=root / "models",
                output_root=root / "out",
                force=False,
                dry_run=False,
                report_path=report,
                workers=1,
            )
            summary = json.loads((root / "out" / "trees" / "M_Tree.json").read_text())
            report_payload = json.loads(report.read_text())

        self.assertEqual(stats.converted, 1)
        self.assertEqual(summary["meshes"][0]["name"], "trunk")
        self.assertEqual(report_payload["total_found"], 1)
        self.assertEqual(report_payload["converted"], 1)

    def test_convert_all_with_worker_pool(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            models = root / "models"
            models.mkdir()
            for index in range(3):
                (models / f"m_{index}.bwm").write_bytes(triangle_model())
            (models / "broken.bwm").write_bytes(triangle_model(version=7))

            stats = converter.convert_all(
                bwm_root=models,
                output_root=root / "out",
                force=True,
                dry_run=False,
                report_path=None,
                workers=2,
            )
            written = sorted(p.name for p in (root / "out").glob("*.json"))

        self.assertEqual(stats.total_found, 4)
        self.assertEqual(stats.converted, 3)
        self.assertEqual(stats.skipped_corrupt, 1)
        self.assertEqual(written, ["m_0.json", "m_1.json", "m_2.json"])
        self.assertEqual(len(stats.failures), 1)

    def test_dry_run_writes_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            (root / "a.bwm").write_bytes(triangle_model())
            stats = converter.convert_all(root, root / "out", False, True, None)
            self.assertFalse((root / "out").exists())
        self.assertEqual(stats.total_found, 1)
        self.assertEqual(stats.converted, 0)

    def test_merge_stats(self) -> None:
        target = converter.ConversionStats(converted=1, failures=[{"source": "a"}])
        source = converter.ConversionStats(converted=2, failed=1, failures=[{"source": "b"}])
        converter.merge_stats(target, source)
        self.assertEqual(target.converted, 3)
        self.assertEqual(target.failed, 1)
        self.assertEqual([f["source"] for f in target.failures], ["a", "b"])

    def test_main_rejects_missing_root(self) -> None:
        with self.assertLogs(level="ERROR"):
            code = converter.main(["--bwm-root", "/nonexistent/bwm", "--output-root", "/tmp/out"])
        self.assertEqual(code, 1)


if __name__ == "__main__":
    unittest.main()
