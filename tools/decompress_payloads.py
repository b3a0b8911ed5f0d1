#!/usr/bin/env python3
"""
SimCity 4 QFS Payload Batch Decompressor

Decompresses a set of QFS payloads that have already been cut out of their
DBPF archives. The archive index supplies each payload's decompressed size;
those sizes are passed in through a JSON manifest:

    {
        "entries": [
            {"path": "exemplars/0x6534284a_0x00000001.qfs", "size": 1234},
            {"path": "lots/0xa8fbd372_0x00000002.qfs", "size": 98765}
        ]
    }

Paths are relative to the manifest. Corrupt entries are reported and
skipped; the rest of the batch still runs.

Usage:
    python decompress_payloads.py <manifest.json> <output_dir> [--report report.json]
"""

import argparse
import json
import sys
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import List

from scdbpf import QfsError, decompress_bytes


@dataclass
class ManifestEntry:
    """A compressed payload and its declared decompressed size"""
    path: str
    size: int


@dataclass
class PayloadResult:
    """Outcome of decompressing one payload"""
    path: str
    size: int
    ok: bool
    output_file: str = ""
    error_kind: str = ""
    error: str = ""

    def to_dict(self):
        result = {
            'path': self.path,
            'size': self.size,
            'ok': self.ok,
        }
        if self.ok:
            result['output_file'] = self.output_file
        else:
            result['error_kind'] = self.error_kind
            result['error'] = self.error
        return result


def load_manifest(manifest_path: Path) -> List[ManifestEntry]:
    """
    Read manifest entries from a JSON file.

    Raises:
        ValueError: If the manifest is not an object with a list of
            {"path": str, "size": int} entries
    """
    with open(manifest_path, 'r', encoding='utf-8') as f:
        data = json.load(f)

    if not isinstance(data, dict):
        raise ValueError(f"Manifest must be a JSON object: {manifest_path}")
    items = data.get('entries', [])
    if not isinstance(items, list):
        raise ValueError(f"Manifest 'entries' must be a list: {manifest_path}")

    entries = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValueError(f"Manifest entry {index} must be an object")
        path = item.get('path')
        size = item.get('size')
        if not isinstance(path, str) or not path:
            raise ValueError(f"Manifest entry {index} has no valid path")
        if not isinstance(size, int) or isinstance(size, bool):
            raise ValueError(f"Manifest entry {path!r} has non-integer size {size!r}")
        if size < 0:
            raise ValueError(f"Negative size for manifest entry {path!r}")
        entries.append(ManifestEntry(path=path, size=size))
    return entries


class PayloadExtractor:
    """Decompresses every payload listed in a manifest"""

    def __init__(self, manifest_path: str, output_dir: str):
        self.manifest_path = Path(manifest_path)
        self.base_dir = self.manifest_path.parent
        self.output_dir = Path(output_dir)

    def _check_relative(self, rel_path: str):
        """Reject manifest paths that would leave the input or output directory"""
        pure = PurePath(rel_path)
        if pure.is_absolute() or pure.anchor or '..' in pure.parts:
            raise ValueError(f"Manifest path must be relative without '..': {rel_path!r}")

    def _output_path(self, rel_path: str) -> Path:
        out_path = self.output_dir / rel_path
        if out_path.suffix.lower() == '.qfs':
            out_path = out_path.with_suffix('')
        root = self.output_dir.resolve()
        resolved = out_path.resolve()
        if resolved == root or root not in resolved.parents:
            raise ValueError(f"Output for {rel_path!r} falls outside {self.output_dir}")
        return out_path

    def extract_entry(self, entry: ManifestEntry) -> PayloadResult:
        """Decompress a single payload, recording any failure"""
        try:
            self._check_relative(entry.path)
            source = self.base_dir / entry.path
            data = decompress_bytes(source.read_bytes(), entry.size)

            out_path = self._output_path(entry.path)
            out_path.parent.mkdir(parents=True, exist_ok=True)
            out_path.write_bytes(data)
        except (OSError, QfsError, ValueError) as e:
            # QfsError subclasses name the corruption; ValueError covers bad paths and oversize entries
            return PayloadResult(entry.path, entry.size, ok=False,
                                 error_kind=type(e).__name__, error=str(e))

        return PayloadResult(entry.path, entry.size, ok=True, output_file=str(out_path))

    def extract(self) -> List[PayloadResult]:
        """Decompress all manifest entries"""
        entries = load_manifest(self.manifest_path)
        print(f"Found {len(entries)} payloads in {self.manifest_path}")

        results = []
        for entry in entries:
            result = self.extract_entry(entry)
            if not result.ok:
                print(f"  {entry.path}: {result.error_kind}: {result.error}")
            results.append(result)

        succeeded = sum(1 for r in results if r.ok)
        print(f"Decompressed {succeeded} of {len(results)} payloads")
        return results


def export_report(results: List[PayloadResult], output_path: str):
    """Export per-entry results to a JSON file"""
    data = {
        'metadata': {
            'total_entries': len(results),
            'failed_entries': sum(1 for r in results if not r.ok),
        },
        'entries': [r.to_dict() for r in results],
    }

    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)

    print(f"Exported report to: {output_path}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Decompress SimCity 4 QFS payloads listed in a manifest',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s payloads/manifest.json out/
  %(prog)s payloads/manifest.json out/ --report report.json
  %(prog)s payloads/manifest.json out/ --strict
        """
    )

    parser.add_argument('manifest', help='JSON manifest listing payload paths and sizes')
    parser.add_argument('output_dir', help='Directory for decompressed files')
    parser.add_argument('--report', '-r', help='Write a JSON report of every entry')
    parser.add_argument(
        '--strict',
        action='store_true',
        help='Exit with status 1 if any payload fails to decompress'
    )

    args = parser.parse_args(argv)

    try:
        extractor = PayloadExtractor(args.manifest, args.output_dir)
        results = extractor.extract()

        if args.report:
            export_report(results, args.report)

        failed = [r for r in results if not r.ok]
        if failed:
            print(f"\n{len(failed)} corrupt or missing payloads skipped")
            if args.strict:
                return 1
        return 0

    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
