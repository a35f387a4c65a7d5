"""
Antivirus scanning for uploaded document versions.

`AV_BACKEND=none` (default outside production) reports every file clean; `clamscan`
shells out to ClamAV with a timeout. clamscan exit codes: 0 clean, 1 infected,
anything else is an engine error.
"""
from __future__ import annotations

import logging
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path

from app.cdms.constants import AV_CLEAN, AV_INFECTED
from app.cdms.errors import ExternalFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanVerdict:
    verdict: str  # AV_CLEAN | AV_INFECTED
    detail: str

    @property
    def is_clean(self) -> bool:
        return self.verdict == AV_CLEAN


class ScanEngine:
    def scan(self, file_bytes: bytes) -> ScanVerdict:
        raise NotImplementedError


class NullScanEngine(ScanEngine):
    def scan(self, file_bytes: bytes) -> ScanVerdict:
        return ScanVerdict(verdict=AV_CLEAN, detail="No threats detected")


@dataclass
class ClamScanEngine(ScanEngine):
    clamscan_path: str = "clamscan"
    timeout_seconds: int = 120

    def scan(self, file_bytes: bytes) -> ScanVerdict:
        with tempfile.TemporaryDirectory(prefix="cdms-av-") as tmp:
            target = Path(tmp) / "upload.bin"
            target.write_bytes(file_bytes)
            try:
                proc = subprocess.run(
                    [self.clamscan_path, "--no-summary", "--stdout", str(target)],
                    capture_output=True,
                    timeout=self.timeout_seconds,
                    check=False,
                )
            except subprocess.TimeoutExpired as e:
                raise ExternalFailure(f"clamscan timed out after {self.timeout_seconds}s") from e
            except FileNotFoundError as e:
                raise ExternalFailure(f"clamscan not found at {self.clamscan_path!r}") from e

        out = proc.stdout.decode("utf-8", errors="replace").strip()
        if proc.returncode == 0:
            return ScanVerdict(verdict=AV_CLEAN, detail="No threats detected")
        if proc.returncode == 1:
            # "<path>: Eicar-Signature FOUND"
            signature = out.split(":", 1)[-1].strip() if out else "threat detected"
            logger.warning("clamscan flagged upload: %s", signature)
            return ScanVerdict(verdict=AV_INFECTED, detail=signature)
        err = proc.stderr.decode("utf-8", errors="replace").strip()
        raise ExternalFailure(f"clamscan failed (exit {proc.returncode}): {(err or out)[:200]}")


def scanner_from_config(config: dict) -> ScanEngine:
    backend = (config.get("AV_BACKEND") or "none").strip().lower()
    if backend == "clamscan":
        return ClamScanEngine(
            clamscan_path=config.get("CLAMSCAN_PATH") or "clamscan",
            timeout_seconds=int(config.get("AV_TIMEOUT_SECONDS") or 120),
        )
    return NullScanEngine()
