#!/usr/bin/env python3
"""
StakeChain Claim Bundle Verifier

A standalone tool to verify claim bundles independently.
No server connection required - verification is cryptographic.

Bundle layout (as written by sample_data.py):
    {
        "_meta": {...},
        "window": {"account": ..., "stake_events": [...], "reward_events": [...],
                   "account_anchor": {...} | null},
        "anchors": {"stake_from": ..., "stake_to": ..., "reward_from": ...,
                    "reward_to": ..., "next_stake_timestamp": ... | "stake_to_is_head": true,
                    "account_anchor": ...},
        "expected_entitlement": "123"        (optional)
    }

"anchors" is required with all four window bounds. A bundle without them
only proves the window is self-consistent, so it is rejected as
INVALID_FORMAT.

Usage:
    python verify.py bundle.json
    python verify.py bundle.json --verbose
    python verify.py bundle.json --json

Exit codes:
    0 - VERIFIED: All checks passed
    1 - TAMPERED: Hash, linkage, total or anchor mismatch
    2 - MISMATCH: Window is authentic but the entitlement differs from expected
    3 - INVALID_FORMAT: Bundle structure invalid
"""

import argparse
import json
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from stakechain.core import ChainIntegrityError, ClaimVerifier
from stakechain.schemas import ClaimResult, ClaimWindow, TrustedAnchors


# ============================================================
# Result Types
# ============================================================

class VerificationResult(Enum):
    VERIFIED = "VERIFIED"
    TAMPERED = "TAMPERED"
    MISMATCH = "MISMATCH"
    INVALID_FORMAT = "INVALID_FORMAT"


EXIT_CODES = {
    VerificationResult.VERIFIED: 0,
    VerificationResult.TAMPERED: 1,
    VerificationResult.MISMATCH: 2,
    VerificationResult.INVALID_FORMAT: 3,
}


@dataclass
class VerificationReport:
    result: VerificationResult
    account: str
    stake_event_count: int
    reward_event_count: int
    entitlement: Optional[int] = None
    checks_passed: list[str] = field(default_factory=list)
    checks_failed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


# ============================================================
# Bundle Verifier
# ============================================================

class BundleVerifier:
    """Verifies a claim bundle with the same ClaimVerifier the service uses."""

    def __init__(self, bundle: Any, verbose: bool = False):
        self.bundle = bundle
        self.verbose = verbose
        self.checks_passed: list[str] = []
        self.checks_failed: list[str] = []
        self.warnings: list[str] = []
        self.window: Optional[ClaimWindow] = None
        self.result: Optional[ClaimResult] = None

    def log(self, msg: str):
        if self.verbose:
            print(f"  {msg}")

    def verify(self) -> VerificationReport:
        """Run all verification checks."""

        # 1. Parse window and anchors
        anchors = self._parse()
        if anchors is None:
            return self._report(VerificationResult.INVALID_FORMAT)

        # 2. Authenticate the window and compute the entitlement
        self.log("Verifying chain windows...")
        try:
            self.result = ClaimVerifier().verify(self.window, anchors)
        except ChainIntegrityError as e:
            self.checks_failed.append(str(e))
            return self._report(VerificationResult.TAMPERED)

        self.checks_passed.append(
            f"All {len(self.window.stake_events)} stake events verified"
        )
        self.checks_passed.append(
            f"All {len(self.window.reward_events)} reward events verified"
        )
        self.checks_passed.append("Window bounded by the trusted anchors")

        # 3. Compare against the expected entitlement, if any
        if not self._check_expected():
            return self._report(VerificationResult.MISMATCH)

        return self._report(VerificationResult.VERIFIED)

    def _parse(self) -> Optional[TrustedAnchors]:
        self.log("Checking bundle structure...")

        if not isinstance(self.bundle, dict) or "window" not in self.bundle:
            self.checks_failed.append("Missing required key: window")
            return None

        try:
            self.window = ClaimWindow.model_validate(self.bundle["window"])
        except ValidationError as e:
            self.checks_failed.append(f"Invalid window: {e.error_count()} validation errors")
            self.log(str(e))
            return None

        raw_anchors = self.bundle.get("anchors")
        if raw_anchors is None:
            self.checks_failed.append("Missing required key: anchors")
            return None

        try:
            anchors = TrustedAnchors.model_validate(raw_anchors)
        except ValidationError as e:
            self.checks_failed.append(f"Invalid anchors: {e.error_count()} validation errors")
            self.log(str(e))
            return None

        self.checks_passed.append("Bundle structure valid")
        return anchors

    def _check_expected(self) -> bool:
        raw = self.bundle.get("expected_entitlement")
        if raw is None:
            return True
        try:
            expected = int(raw)
        except (TypeError, ValueError):
            self.warnings.append(f"expected_entitlement is not an integer: {raw!r}")
            return True

        if expected != self.result.entitlement:
            self.checks_failed.append(
                f"Entitlement mismatch: computed {self.result.entitlement}, expected {expected}"
            )
            return False

        self.checks_passed.append("Entitlement matches expected value")
        return True

    def _report(self, result: VerificationResult) -> VerificationReport:
        window = self.window
        return VerificationReport(
            result=result,
            account=window.account if window else "unknown",
            stake_event_count=len(window.stake_events) if window else 0,
            reward_event_count=len(window.reward_events) if window else 0,
            entitlement=self.result.entitlement if self.result else None,
            checks_passed=self.checks_passed,
            checks_failed=self.checks_failed,
            warnings=self.warnings,
        )


# ============================================================
# CLI
# ============================================================

_BANNERS = {
    VerificationResult.VERIFIED: "[VERIFIED] - All checks passed",
    VerificationResult.TAMPERED: "[TAMPERED] - Chain window failed verification",
    VerificationResult.MISMATCH: "[MISMATCH] - Entitlement differs from expected",
    VerificationResult.INVALID_FORMAT: "[INVALID_FORMAT] - Bundle structure invalid",
}


def print_report(report: VerificationReport, json_output: bool = False):
    """Print verification report."""

    if json_output:
        output = {
            "result": report.result.value,
            "account": report.account,
            "stake_event_count": report.stake_event_count,
            "reward_event_count": report.reward_event_count,
            "entitlement": str(report.entitlement) if report.entitlement is not None else None,
            "checks_passed": report.checks_passed,
            "checks_failed": report.checks_failed,
            "warnings": report.warnings,
        }
        print(json.dumps(output, indent=2))
        return

    print("\n" + "=" * 60)
    print(f"  {_BANNERS[report.result]}")
    print("=" * 60)

    print(f"\nAccount:       {report.account}")
    print(f"Stake events:  {report.stake_event_count}")
    print(f"Reward events: {report.reward_event_count}")
    if report.entitlement is not None:
        print(f"Entitlement:   {report.entitlement}")

    if report.checks_passed:
        print("\nPassed:")
        for check in report.checks_passed:
            print(f"  + {check}")

    if report.checks_failed:
        print("\nFailed:")
        for check in report.checks_failed:
            print(f"  - {check}")

    if report.warnings:
        print("\nWarnings:")
        for warning in report.warnings:
            print(f"  ! {warning}")

    print()


def main():
    parser = argparse.ArgumentParser(
        description="Verify a StakeChain claim bundle",
        epilog="Exit codes: 0=VERIFIED, 1=TAMPERED, 2=MISMATCH, 3=INVALID_FORMAT",
    )
    parser.add_argument("bundle", type=str, help="Path to the bundle JSON file")
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show detailed verification progress",
    )
    parser.add_argument("--json", action="store_true", help="Output result as JSON")

    args = parser.parse_args()

    bundle_path = Path(args.bundle)
    if not bundle_path.exists():
        print(f"ERROR: File not found: {bundle_path}")
        sys.exit(3)

    try:
        with open(bundle_path, "r", encoding="utf-8") as f:
            bundle = json.load(f)
    except json.JSONDecodeError as e:
        print(f"ERROR: Invalid JSON: {e}")
        sys.exit(3)
    except OSError as e:
        print(f"ERROR: Failed to read file: {e}")
        sys.exit(3)

    report = BundleVerifier(bundle, verbose=args.verbose).verify()
    print_report(report, json_output=args.json)
    sys.exit(EXIT_CODES[report.result])


if __name__ == "__main__":
    main()
