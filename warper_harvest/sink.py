"""
Newline-delimited JSON storage.

Intermediate files (maps.ndjson, layers.ndjson) and the two output
artifacts (objects.ndjson, logs.ndjson) all hold one JSON object per line.
"""

import json
import logging
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterator, Union

from .models import EmissionType

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def dumps(line: Dict[str, Any]) -> str:
    return json.dumps(line, ensure_ascii=False, separators=(",", ":"))


def read_ndjson(path: PathLike) -> Iterator[Dict[str, Any]]:
    """Yield one parsed object per non-blank line"""
    with open(path, encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"{path}:{line_no}: invalid JSON ({e})") from e


class NdjsonWriter:
    """Append-only NDJSON file"""

    def __init__(self, path: PathLike):
        self.path = Path(path)
        self.count = 0
        self._file = None

    def open(self) -> "NdjsonWriter":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, "w", encoding="utf-8")
        return self

    def write(self, line: Dict[str, Any]):
        if self._file is None:
            raise RuntimeError(f"{self.path} is not open")
        self._file.write(dumps(line) + "\n")
        self.count += 1

    def close(self):
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> "NdjsonWriter":
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class NdjsonSink:
    """
    Output sink for emission lines.

    Object and relation lines go to the objects artifact, log lines to the
    logs artifact, so every run leaves both files behind.
    """

    def __init__(self, objects_path: PathLike, logs_path: PathLike):
        self.objects = NdjsonWriter(objects_path)
        self.logs = NdjsonWriter(logs_path)
        self.counts: Counter = Counter()

    def write(self, line: Dict[str, Any]):
        kind = line.get("type")
        if kind == EmissionType.LOG.value:
            self.logs.write(line)
        elif kind in (EmissionType.OBJECT.value, EmissionType.RELATION.value):
            self.objects.write(line)
        else:
            raise ValueError(f"Unknown emission type: {kind!r}")
        self.counts[kind] += 1

    def __enter__(self) -> "NdjsonSink":
        self.objects.open()
        self.logs.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.objects.close()
        self.logs.close()
        logger.info(
            f"Wrote {self.objects.count} lines to {self.objects.path}, "
            f"{self.logs.count} lines to {self.logs.path}"
        )
