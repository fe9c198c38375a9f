# custody/verify/verifier.py
from typing import List, Optional
from dataclasses import dataclass

from custody.chain.entry import CustodyLedgerEntry
from custody.core.types import CustodyRecord, Transition
from custody.core.errors import CustodyError
from custody.core.hashing import transition_hash
from custody.storage import StorageBackend


@dataclass
class VerificationFailure:
    index: int
    message: str
    category: str = "general"  # e.g. "hash_chain", "sequence", "chain", "replay", "record"


@dataclass
class VerificationResult:
    is_valid: bool
    message: str = ""
    failures: List[VerificationFailure] = None

    def __post_init__(self):
        if self.failures is None:
            self.failures = []

    @property
    def first_failure(self) -> Optional[VerificationFailure]:
        return self.failures[0] if self.failures else None

    def __bool__(self):
        return self.is_valid

    def __str__(self):
        if self.is_valid:
            return "Custody history is valid ✓"
        lines = [f"Verification FAILED ({len(self.failures)} issues):"]
        for f in self.failures:
            lines.append(f"  • [{f.index}] {f.category}: {f.message}")
        return "\n".join(lines)


class HistoryVerifier:
    """
    Offline verifier for custody histories.

    Checks the hash links between transitions, then replays every transition
    through a fresh CustodyLedgerEntry, so each recorded handoff must have
    been authorized by the owner of the time. The replayed record must equal
    the stored one.
    """

    def verify(self, history: List[Transition], record: Optional[CustodyRecord] = None) -> VerificationResult:
        if not history:
            if record is not None and record != CustodyRecord.empty():
                return VerificationResult(
                    False,
                    "Record present but history is empty",
                    [VerificationFailure(-1, "Stored record has no transitions", "record")],
                )
            return VerificationResult(True, "Empty history is valid")

        result = VerificationResult(True)

        # 1. Chain & sequence consistency
        chain_id = history[0].chain_id
        for i, t in enumerate(history):
            if t.chain_id != chain_id:
                result.failures.append(VerificationFailure(i, f"Chain ID mismatch: {t.chain_id}", "chain"))
                result.is_valid = False
            if t.sequence != i:
                result.failures.append(VerificationFailure(i, f"Sequence mismatch: expected {i}, got {t.sequence}", "sequence"))
                result.is_valid = False

        if not result.is_valid:
            return result

        # 2. Hash chain
        if history[0].prev_hash != "":
            result.failures.append(VerificationFailure(0, "First transition must not link backwards", "hash_chain"))
            result.is_valid = False
        for i in range(1, len(history)):
            if history[i].prev_hash != transition_hash(history[i - 1]):
                result.failures.append(VerificationFailure(i, "prev_hash does not match previous transition hash", "hash_chain"))
                result.is_valid = False

        # 3. Replay through the state machine
        replay = CustodyLedgerEntry()
        for i, t in enumerate(history):
            try:
                if t.operation == "open":
                    replay.open(t.chain_id, t.location, t.caller, t.updated_at)
                elif t.operation == "transfer":
                    replay.transfer(t.chain_id, t.owner, t.location, t.caller, t.updated_at)
                elif t.operation == "finalize":
                    replay.finalize(t.chain_id, t.owner, t.location, t.caller, t.updated_at)
                else:
                    result.failures.append(VerificationFailure(i, f"Unknown operation '{t.operation}'", "replay"))
                    result.is_valid = False
                    break
            except (CustodyError, ValueError) as e:
                result.failures.append(VerificationFailure(i, f"{t.operation} rejected on replay: {e}", "replay"))
                result.is_valid = False
                break

            if replay.read() != t.record():
                result.failures.append(VerificationFailure(i, "Recorded outcome differs from replayed outcome", "replay"))
                result.is_valid = False
                break

        # 4. Final record
        if result.is_valid and record is not None and replay.read() != record:
            result.failures.append(VerificationFailure(len(history) - 1, "Stored record does not match replayed history", "record"))
            result.is_valid = False

        result.message = "Valid history" if result.is_valid else f"Failed with {len(result.failures)} issues"
        return result

    def verify_from_storage(self, chain_id: str, storage: StorageBackend) -> VerificationResult:
        """
        Load a chain's record and history from persistent storage and verify them.
        Returns a failed result if loading fails.
        """
        try:
            record = storage.load_record(chain_id)
            history = storage.load_transitions(chain_id, check_links=False)
        except Exception as e:
            return VerificationResult(
                False,
                f"Failed to load chain '{chain_id}' from storage: {str(e)}",
                [VerificationFailure(-1, str(e), "storage")]
            )

        if record is None and not history:
            return VerificationResult(
                False,
                f"No custody chain '{chain_id}' in storage",
                [VerificationFailure(-1, "chain not found", "storage")]
            )

        return self.verify(history, record)
