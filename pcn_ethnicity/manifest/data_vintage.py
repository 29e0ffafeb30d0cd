"""
Input vintage tracking.

Hashes every source file at the start of a run so the run summary can say
whether any of the published inputs changed since the last run that
exported outputs.

Stored in metadata.input_vintage:
- source: 'lookup', 'census', ...
- file_name: file the source was read from
- data_hash: SHA256 of the file bytes (first 16 hex chars)
- previous_hash: for diff detection
- size_bytes, recorded_at
"""

import hashlib
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict

import duckdb

from pcn_ethnicity.config import Settings

log = logging.getLogger("vintage")

CHUNK_SIZE = 1 << 20


def compute_file_hash(path: Path) -> str:
    """Stable SHA256 of a file's bytes"""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()[:16]


def source_files(settings: Settings) -> Dict[str, Path]:
    return {
        "lookup": settings.lookup_path,
        "practices": settings.practice_path,
        "pcns": settings.pcn_path,
        "registrations": settings.registration_path,
        "census": settings.census_path,
    }


class InputVintageTracker:
    """
    Detects input changes at the start of a run and records them once the run
    has produced outputs.

    check_all() compares every input against the last committed hash without
    writing anything; commit() stores the pending hashes. A run that fails
    before export never commits, so its inputs still show as changed next time.
    """

    def __init__(self, duck_path: Path):
        self.duck_path = duck_path
        self.changes_this_run: list[dict] = []
        self.no_changes_this_run: list[str] = []
        self.pending: list[tuple] = []
        self._ensure_schema()

    def _ensure_schema(self):
        self.duck_path.parent.mkdir(parents=True, exist_ok=True)
        con = duckdb.connect(str(self.duck_path))
        try:
            con.execute("CREATE SCHEMA IF NOT EXISTS metadata")
            con.execute("""
                CREATE TABLE IF NOT EXISTS metadata.input_vintage (
                    source TEXT NOT NULL,
                    file_name TEXT NOT NULL,
                    data_hash TEXT NOT NULL,
                    previous_hash TEXT,
                    size_bytes BIGINT,
                    recorded_at TIMESTAMP NOT NULL,
                    PRIMARY KEY (source)
                )
            """)
            log.debug("Ensured metadata.input_vintage exists")
        finally:
            con.close()

    def check(self, source: str, path: Path) -> bool:
        """
        Compare a source file with its last committed hash.

        Returns True if the file changed (or is new), False if identical.
        """
        if not path.exists():
            raise FileNotFoundError(f"Input file missing for {source}: {path}")

        new_hash = compute_file_hash(path)

        con = duckdb.connect(str(self.duck_path), read_only=True)
        try:
            result = con.execute(
                "SELECT data_hash FROM metadata.input_vintage WHERE source = ?", [source]
            ).fetchone()
        finally:
            con.close()

        previous_hash = result[0] if result else None
        changed = previous_hash != new_hash
        self.pending.append((source, path.name, new_hash, previous_hash, path.stat().st_size))

        if changed:
            self.changes_this_run.append({
                "source": source,
                "file_name": path.name,
                "previous_hash": previous_hash,
                "new_hash": new_hash,
                "is_new": previous_hash is None,
            })
            log.info(f"{'NEW' if previous_hash is None else 'CHANGED'}: {source} ({path.name})")
        else:
            self.no_changes_this_run.append(source)
            log.debug(f"UNCHANGED: {source}")

        return changed

    def check_all(self, settings: Settings) -> dict:
        for source, path in source_files(settings).items():
            self.check(source, path)
        return self.get_run_summary()

    def commit(self) -> int:
        """Store the hashes checked this run; returns the number of rows written"""
        if not self.pending:
            return 0

        now = datetime.now(timezone.utc)
        con = duckdb.connect(str(self.duck_path))
        try:
            for source, file_name, data_hash, previous_hash, size_bytes in self.pending:
                con.execute("""
                    INSERT OR REPLACE INTO metadata.input_vintage
                    (source, file_name, data_hash, previous_hash, size_bytes, recorded_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, [source, file_name, data_hash, previous_hash, size_bytes, now])
        finally:
            con.close()

        written = len(self.pending)
        self.pending = []
        log.info(f"✓ Recorded vintage for {written} inputs")
        return written

    def get_run_summary(self) -> dict:
        return {
            "new_data_detected": len(self.changes_this_run) > 0,
            "inputs_changed": len(self.changes_this_run),
            "inputs_unchanged": len(self.no_changes_this_run),
            "changes": self.changes_this_run,
            "unchanged": self.no_changes_this_run,
        }

    def get_all_vintages(self) -> list[dict]:
        """Current state of all committed inputs"""
        con = duckdb.connect(str(self.duck_path))
        try:
            df = con.execute("SELECT * FROM metadata.input_vintage ORDER BY source").fetchdf()
            return df.to_dict(orient="records")
        finally:
            con.close()
