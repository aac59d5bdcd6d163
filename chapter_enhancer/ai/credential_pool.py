"""
Credential Pool - ordered API keys with failover or round-robin rotation.

The pool is the only piece of mutable state shared between concurrently
running jobs, so every read and write of the current index happens under
a lock.

Policies:
    FAILOVER     Stay on slot 0 until a credential is rejected, then move to
                 the next slot. Advancing past the last slot is exhaustion.
    ROUND_ROBIN  Move to (index + 1) % size on every advance. Never exhausts.
"""

import threading
from dataclasses import dataclass
from enum import Enum

from ..errors import CredentialsExhaustedError, NoCredentialsError
from ..logging_config import debug_log


class RotationPolicy(str, Enum):
    """How the pool picks the next credential."""
    FAILOVER = "failover"
    ROUND_ROBIN = "round_robin"


@dataclass(frozen=True)
class Credential:
    """
    An opaque API secret with its position in the pool.

    Attributes:
        secret: The API key itself.
        slot: Position in the pool (0 = primary).
    """
    secret: str
    slot: int

    @property
    def masked(self) -> str:
        """Loggable form of the secret (last four characters only)."""
        return f"slot {self.slot} (...{self.secret[-4:]})"

    def __repr__(self) -> str:
        return f"Credential({self.masked})"


class CredentialPool:
    """
    Thread-safe ordered list of credentials with a rotating current index.

    Args:
        secrets: Ordered API keys, primary first. Blank entries are dropped.
        policy: RotationPolicy (or its string value).

    Raises:
        NoCredentialsError: If no non-blank secret remains.

    Example:
        pool = CredentialPool(["primary-key", "backup-key"], RotationPolicy.FAILOVER)
        cred = pool.current()       # slot 0
        pool.advance()              # slot 1
        pool.advance()              # raises CredentialsExhaustedError

    Schedulers rotating after a failure use advance_from(slot), which only
    moves the index if nobody else has moved it off that slot yet.
    """

    def __init__(self, secrets: list[str], policy: RotationPolicy | str = RotationPolicy.FAILOVER):
        cleaned = [s.strip() for s in secrets if s and s.strip()]
        if not cleaned:
            raise NoCredentialsError("No API keys configured")

        self.policy = RotationPolicy(policy)
        self._credentials = [Credential(secret=s, slot=i) for i, s in enumerate(cleaned)]
        self._index = 0
        self._lock = threading.Lock()

        debug_log(
            f"[POOL] Created pool with {len(self._credentials)} credential(s), "
            f"policy={self.policy.value}"
        )

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def size(self) -> int:
        return len(self._credentials)

    def current(self) -> Credential:
        """Return the credential at the current index."""
        with self._lock:
            return self._credentials[self._index]

    def advance(self) -> Credential:
        """
        Move to the next credential according to the policy.

        Returns:
            The new current credential.

        Raises:
            CredentialsExhaustedError: FAILOVER only, when already on the last slot.
                The index stays on the last slot; call reset() to start over.
        """
        with self._lock:
            if self.policy is RotationPolicy.ROUND_ROBIN:
                self._index = (self._index + 1) % len(self._credentials)
            else:
                if self._index + 1 >= len(self._credentials):
                    debug_log(f"[POOL] Failover exhausted after slot {self._index}")
                    raise CredentialsExhaustedError(
                        f"All {len(self._credentials)} API key(s) failed"
                    )
                self._index += 1

            credential = self._credentials[self._index]

        debug_log(f"[POOL] Advanced to {credential.masked}")
        return credential

    def advance_from(self, failed_slot: int) -> Credential:
        """
        Move past `failed_slot` unless another caller already has.

        Jobs sharing a pool can see the same credential fail at the same
        time; only the first of them advances, the others pick up the
        credential it moved to. A caller whose own advance runs off the
        last failover slot resets the pool to the primary credential.

        Returns:
            The credential to try next.

        Raises:
            CredentialsExhaustedError: FAILOVER only, when `failed_slot` is
                the last slot and still current.
        """
        with self._lock:
            if self._index != failed_slot:
                credential = self._credentials[self._index]
                debug_log(f"[POOL] Slot {failed_slot} already left; using {credential.masked}")
                return credential

            if self.policy is RotationPolicy.ROUND_ROBIN:
                self._index = (self._index + 1) % len(self._credentials)
            elif self._index + 1 >= len(self._credentials):
                self._index = 0
                debug_log(f"[POOL] Failover exhausted after slot {failed_slot}; reset to primary")
                raise CredentialsExhaustedError(
                    f"All {len(self._credentials)} API key(s) failed"
                )
            else:
                self._index += 1

            credential = self._credentials[self._index]

        debug_log(f"[POOL] Advanced from slot {failed_slot} to {credential.masked}")
        return credential

    def reset(self) -> None:
        """Return to the primary credential (slot 0)."""
        with self._lock:
            self._index = 0
        debug_log("[POOL] Reset to primary credential")
