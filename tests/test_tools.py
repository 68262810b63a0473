"""
Tests for the standalone tools: sample data generator and bundle verifier.
"""

import copy
import importlib.util
import json
import sys
from pathlib import Path

import pytest

from stakechain.core import InMemoryCustody, RewardLedger, StakeLedger

TOOLS_DIR = Path(__file__).resolve().parent.parent / "tools"


def _load(name: str):
    spec = importlib.util.spec_from_file_location(f"stakechain_tools_{name}", TOOLS_DIR / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = module
    spec.loader.exec_module(module)
    return module


sample_data = _load("sample_data")
verify = _load("verify")


@pytest.fixture(scope="module")
def bundle():
    return sample_data.simulate(iterations=150, accounts=5, seed=7)


class TestSampleData:

    def test_bundle_layout(self, bundle):
        assert set(bundle) == {"_meta", "window", "anchors", "expected_entitlement"}
        assert bundle["window"]["stake_events"]
        assert bundle["window"]["reward_events"]
        assert int(bundle["expected_entitlement"]) >= 0

    def test_anchors_prove_completeness(self, bundle):
        anchors = bundle["anchors"]
        assert anchors["stake_to"] == bundle["window"]["stake_events"][-1]["current_hash"]
        assert anchors["reward_to"] == bundle["window"]["reward_events"][-1]["current_hash"]
        assert anchors["stake_to_is_head"] != (anchors["next_stake_timestamp"] is not None)

    def test_account_anchor_matches_window(self, bundle):
        window_anchor = bundle["window"]["account_anchor"]
        trusted = bundle["anchors"]["account_anchor"]
        assert (window_anchor or {}).get("current_hash") == trusted

    def test_seed_is_reproducible(self, bundle):
        again = sample_data.simulate(iterations=150, accounts=5, seed=7)
        assert again["window"] == bundle["window"]
        assert again["expected_entitlement"] == bundle["expected_entitlement"]

    def test_bundle_is_json(self, bundle):
        assert json.loads(json.dumps(bundle))["window"] == bundle["window"]

    @pytest.mark.parametrize("seed", [1, 2, 3, 4, 5])
    def test_expected_entitlement_matches_verifier(self, seed):
        bundle = sample_data.simulate(iterations=200, accounts=4, seed=seed)
        report = verify.BundleVerifier(bundle).verify()
        assert report.result == verify.VerificationResult.VERIFIED, report.checks_failed
        assert report.entitlement == int(bundle["expected_entitlement"])

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            sample_data.simulate(iterations=0)


class TestBundleVerifier:

    def test_verified(self, bundle):
        report = verify.BundleVerifier(bundle).verify()
        assert report.result == verify.VerificationResult.VERIFIED
        assert verify.EXIT_CODES[report.result] == 0

    def test_tampered(self, bundle):
        tampered = copy.deepcopy(bundle)
        tampered["window"]["reward_events"][0]["amount"] += 1

        report = verify.BundleVerifier(tampered).verify()
        assert report.result == verify.VerificationResult.TAMPERED
        assert report.checks_failed

    def test_mismatch(self, bundle):
        wrong = copy.deepcopy(bundle)
        wrong["expected_entitlement"] = str(int(bundle["expected_entitlement"]) + 1)

        report = verify.BundleVerifier(wrong).verify()
        assert report.result == verify.VerificationResult.MISMATCH
        assert verify.EXIT_CODES[report.result] == 2

    def test_missing_window(self):
        report = verify.BundleVerifier({"anchors": {}}).verify()
        assert report.result == verify.VerificationResult.INVALID_FORMAT

    def test_invalid_event(self, bundle):
        broken = copy.deepcopy(bundle)
        broken["window"]["stake_events"][0]["account"] = "0x12"

        report = verify.BundleVerifier(broken).verify()
        assert report.result == verify.VerificationResult.INVALID_FORMAT

    def test_missing_anchors_rejected(self, bundle):
        unanchored = copy.deepcopy(bundle)
        del unanchored["anchors"]

        report = verify.BundleVerifier(unanchored).verify()
        assert report.result == verify.VerificationResult.INVALID_FORMAT
        assert "Missing required key: anchors" in report.checks_failed

    def test_from_only_anchors_rejected(self, bundle):
        partial = copy.deepcopy(bundle)
        partial["anchors"] = {
            "stake_from": bundle["anchors"]["stake_from"],
            "reward_from": bundle["anchors"]["reward_from"],
        }

        report = verify.BundleVerifier(partial).verify()
        assert report.result == verify.VerificationResult.INVALID_FORMAT

    def test_truncated_stake_window_rejected(self):
        """ALICE's exit at t=3 is cut from the window; the reward at t=4 would pay her."""
        alice, bob = "0x" + "a1" * 20, "0x" + "b2" * 20
        stake = StakeLedger(custody=InMemoryCustody({alice: 1000, bob: 1000}))
        rewards = RewardLedger()
        stake.stake(alice, 100, timestamp=1)
        stake.stake(bob, 100, timestamp=2)
        stake.unstake(alice, 100, timestamp=3)
        rewards.add_rewards(1000, timestamp=4)
        rewards.add_rewards(1, timestamp=5)

        stakes = [e.model_dump(mode="json") for e in stake.get_events()[:2]]
        reward_events = [e.model_dump(mode="json") for e in rewards.get_events()]
        truncated = {
            "window": {"account": alice, "stake_events": stakes, "reward_events": reward_events},
            "anchors": {
                "stake_from": stakes[0]["current_hash"],
                "stake_to": stakes[-1]["current_hash"],
                "reward_from": reward_events[0]["current_hash"],
                "reward_to": reward_events[-1]["current_hash"],
            },
            "expected_entitlement": "500",
        }

        report = verify.BundleVerifier(truncated).verify()
        assert report.result == verify.VerificationResult.TAMPERED
        assert "completeness is unproven" in report.checks_failed[0]

    def test_cli_exit_code(self, bundle, tmp_path, monkeypatch, capsys):
        path = tmp_path / "bundle.json"
        path.write_text(json.dumps(bundle), encoding="utf-8")
        monkeypatch.setattr("sys.argv", ["verify.py", str(path), "--json"])

        with pytest.raises(SystemExit) as exc:
            verify.main()

        assert exc.value.code == 0
        assert '"result": "VERIFIED"' in capsys.readouterr().out
