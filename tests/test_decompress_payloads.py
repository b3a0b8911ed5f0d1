import contextlib
import io
import json
import tempfile
import unittest
from pathlib import Path

from decompress_payloads import ManifestEntry, PayloadExtractor, export_report, load_manifest, main


PREFIX = b"\x00\x00\x00\x00\x10\xfb\x00\x00\x00"
GOOD = PREFIX + b"\xe0ABCD" + b"\x0c\x01" + b"\xfc"
BAD_REFERENCE = PREFIX + b"\x00\x00"


class TestPayloadExtractor(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.root = Path(self.tmp.name)
        (self.root / "lots").mkdir()
        (self.root / "lots" / "good.qfs").write_bytes(GOOD)
        (self.root / "bad.qfs").write_bytes(BAD_REFERENCE)
        self.manifest = self.root / "manifest.json"
        self.manifest.write_text(json.dumps({
            "entries": [
                {"path": "lots/good.qfs", "size": 10},
                {"path": "bad.qfs", "size": 8},
                {"path": "missing.qfs", "size": 4},
                {"path": "lots/good.qfs", "size": 12},
            ]
        }))
        self.out_dir = self.root / "out"

    def extract(self):
        with contextlib.redirect_stdout(io.StringIO()):
            return PayloadExtractor(str(self.manifest), str(self.out_dir)).extract()

    def test_load_manifest(self):
        entries = load_manifest(self.manifest)
        self.assertEqual(entries[0], ManifestEntry(path="lots/good.qfs", size=10))
        self.assertEqual(len(entries), 4)

    def test_good_entry_written(self):
        results = self.extract()
        self.assertTrue(results[0].ok)
        self.assertEqual((self.out_dir / "lots" / "good").read_bytes(), b"ABCDCDCDCD")

    def test_failures_recorded_per_entry(self):
        results = self.extract()
        self.assertEqual([r.ok for r in results], [True, False, False, False])
        self.assertEqual(results[1].error_kind, "OutOfRangeReference")
        self.assertEqual(results[2].error_kind, "FileNotFoundError")
        self.assertEqual(results[3].error_kind, "LengthMismatch")

    def test_export_report(self):
        results = self.extract()
        report_path = self.root / "report.json"
        with contextlib.redirect_stdout(io.StringIO()):
            export_report(results, str(report_path))
        report = json.loads(report_path.read_text())
        self.assertEqual(report["metadata"], {"total_entries": 4, "failed_entries": 3})
        self.assertNotIn("error_kind", report["entries"][0])
        self.assertEqual(report["entries"][1]["error_kind"], "OutOfRangeReference")

    def test_main_exit_codes(self):
        args = [str(self.manifest), str(self.out_dir)]
        with contextlib.redirect_stdout(io.StringIO()):
            self.assertEqual(main(args), 0)
            self.assertEqual(main(args + ["--strict"]), 1)

    def test_main_bad_manifest(self):
        self.manifest.write_text("not json")
        with contextlib.redirect_stdout(io.StringIO()), contextlib.redirect_stderr(io.StringIO()):
            self.assertEqual(main([str(self.manifest), str(self.out_dir)]), 1)

    def write_manifest(self, entries):
        self.manifest.write_text(json.dumps({"entries": entries}))

    def test_output_collision_does_not_stop_batch(self):
        (self.root / "a.qfs").write_bytes(GOOD)
        (self.root / "a").mkdir()
        (self.root / "a" / "b.qfs").write_bytes(GOOD)
        (self.root / "c.qfs").write_bytes(GOOD)
        self.write_manifest([
            {"path": "a.qfs", "size": 10},
            {"path": "a/b.qfs", "size": 10},
            {"path": "c.qfs", "size": 10},
        ])
        report_path = self.root / "report.json"
        with contextlib.redirect_stdout(io.StringIO()):
            code = main([str(self.manifest), str(self.out_dir), "--report", str(report_path)])
        self.assertEqual(code, 0)
        self.assertEqual((self.out_dir / "c").read_bytes(), b"ABCDCDCDCD")
        report = json.loads(report_path.read_text())
        self.assertEqual([e["ok"] for e in report["entries"]], [True, False, True])

    def test_paths_outside_directories_rejected(self):
        elsewhere = self.root / "elsewhere"
        elsewhere.mkdir()
        (elsewhere / "x.qfs").write_bytes(GOOD)
        self.write_manifest([
            {"path": str(elsewhere / "x.qfs"), "size": 10},
            {"path": "../elsewhere/x.qfs", "size": 10},
            {"path": "lots/good.qfs", "size": 10},
        ])
        results = self.extract()
        self.assertEqual([r.ok for r in results], [False, False, True])
        self.assertEqual(results[0].error_kind, "ValueError")
        self.assertEqual(results[1].error_kind, "ValueError")
        self.assertEqual(sorted(p.name for p in elsewhere.iterdir()), ["x.qfs"])

    def test_manifest_must_be_object(self):
        self.manifest.write_text("[]")
        with self.assertRaises(ValueError):
            load_manifest(self.manifest)
        with contextlib.redirect_stdout(io.StringIO()), contextlib.redirect_stderr(io.StringIO()) as err:
            self.assertEqual(main([str(self.manifest), str(self.out_dir)]), 1)
        self.assertIn("Error:", err.getvalue())

    def test_manifest_entry_types(self):
        bad_entries = [
            {"path": "lots/good.qfs", "size": None},
            {"path": "lots/good.qfs", "size": "10"},
            {"path": "lots/good.qfs", "size": True},
            {"path": 5, "size": 10},
            {"size": 10},
            "lots/good.qfs",
        ]
        for entry in bad_entries:
            with self.subTest(entry=entry):
                self.write_manifest([entry])
                with self.assertRaises(ValueError):
                    load_manifest(self.manifest)
        self.manifest.write_text(json.dumps({"entries": {"path": "x"}}))
        with self.assertRaises(ValueError):
            load_manifest(self.manifest)


if __name__ == '__main__':
    unittest.main()
