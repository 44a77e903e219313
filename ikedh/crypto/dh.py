"""Diffie-Hellman exchange over the IKE MODP groups.

One DiffieHellman object serves one key exchange with one peer:

    local = create(DiffieHellmanGroup.MODP_2048_BIT)
    send(local.get_my_public_value())
    local.set_other_public_value(receive())
    secret = local.get_shared_secret()
    local.destroy()

All values cross the API as chunks of exactly modulus_length bytes
(big-endian, left-padded with zeros).

Exports:
- create(group_id=None, ...) -> DiffieHellman
- DiffieHellman
- validate_public_value(value, group)
- DHError, DHNotReady, DHStateError, InvalidPublicValue
"""

from __future__ import annotations

from contextlib import ExitStack
from typing import Optional, Union

from ikedh.common.allocator import AllocationFailure, Allocator, get_allocator
from ikedh.common.utils import RandomnessUnavailable, SystemRandomSource

from .bigint import (
    ChunkOverflow,
    bytes_to_integer,
    generate_exponent,
    integer_to_bytes,
    mod_pow,
)
from .groups import DiffieHellmanGroup, GroupDescriptor, UnsupportedGroup, resolve


Chunk = Union[bytes, bytearray, memoryview]


class DHError(Exception):
    pass


class DHNotReady(DHError):
    """The requested value does not exist yet (exchange not complete)."""


class DHStateError(DHError):
    pass


class InvalidPublicValue(DHError, ValueError):
    pass


def validate_public_value(value: int, group: GroupDescriptor) -> None:
    """Reject 0, 1, p-1, values >= p and values outside the prime-order subgroup."""
    p = group.p
    if not (2 <= value <= p - 2):
        raise InvalidPublicValue("Peer public value out of range")
    # MODP primes are safe primes (p = 2q + 1) and g = 2 generates the q-subgroup
    q = (p - 1) // 2
    if pow(value, q, p) != 1:
        raise InvalidPublicValue("Peer public value failed subgroup check")


class DiffieHellman:
    """
    Single-use DH exchange state for one group.

    The private exponent is generated at construction and never leaves the
    object. The own public value is computed on first request; the shared
    secret is computed as soon as the peer value is set. Each value is held
    in a buffer from the allocator and wiped on destroy().

    Not thread-safe; one object belongs to the task handling one exchange.
    """

    def __init__(
        self,
        group: GroupDescriptor,
        allocator: Optional[Allocator] = None,
        random_source=None,
        strict: bool = False,
    ):
        self._group = group
        self._allocator = allocator or get_allocator()
        self._strict = strict
        self._destroyed = False

        self._modulus: Optional[bytearray] = None
        self._private_exponent: Optional[bytearray] = None
        self._my_public_value: Optional[bytearray] = None
        self._other_public_value: Optional[bytearray] = None
        self._shared_secret: Optional[bytearray] = None

        random_source = random_source or SystemRandomSource()

        with ExitStack() as stack:
            modulus = self._allocator.clone_bytes(group.modulus)
            stack.callback(self._allocator.free, modulus)

            exponent = generate_exponent(group.modulus_length, random_source)
            private_exponent = self._store(exponent)
            stack.callback(self._allocator.free, private_exponent)

            stack.pop_all()

        self._modulus = modulus
        self._private_exponent = private_exponent

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def group(self) -> GroupDescriptor:
        return self._group

    @property
    def group_id(self) -> DiffieHellmanGroup:
        return self._group.group_id

    @property
    def modulus_length(self) -> int:
        return self._group.modulus_length

    @property
    def public_value_computed(self) -> bool:
        return self._my_public_value is not None

    @property
    def shared_secret_computed(self) -> bool:
        return self._shared_secret is not None

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _check_alive(self) -> None:
        if self._destroyed:
            raise DHStateError("Diffie-Hellman object already destroyed")

    def _store(self, value: int) -> bytearray:
        return self._allocator.clone_bytes(integer_to_bytes(value, self._group.modulus_length))

    def _prime(self) -> int:
        return bytes_to_integer(self._modulus)

    def _exponent(self) -> int:
        return bytes_to_integer(self._private_exponent)

    # ------------------------------------------------------------------
    # Exchange
    # ------------------------------------------------------------------

    def get_my_public_value(self) -> bytes:
        """g^x mod p as a modulus_length chunk, computed once."""
        self._check_alive()
        if self._my_public_value is None:
            value = mod_pow(self._group.generator, self._exponent(), self._prime())
            self._my_public_value = self._store(value)
        return bytes(self._my_public_value)

    def set_other_public_value(self, chunk: Chunk) -> None:
        """
        Take the peer's public value and derive the shared secret from it.

        May be called once; a second call raises DHStateError and keeps the
        first shared secret. Chunks shorter than modulus_length are treated
        as left-padded; longer chunks are accepted as long as the value fits.
        """
        self._check_alive()
        if self._shared_secret is not None:
            raise DHStateError("Peer public value already set for this exchange")

        value = bytes_to_integer(chunk)
        if self._strict:
            validate_public_value(value, self._group)

        with ExitStack() as stack:
            try:
                other = self._store(value)
            except ChunkOverflow as e:
                raise InvalidPublicValue(f"Peer public value too wide: {e}") from e
            stack.callback(self._allocator.free, other)

            secret = mod_pow(value, self._exponent(), self._prime())
            shared = self._store(secret)
            stack.callback(self._allocator.free, shared)

            stack.pop_all()

        self._other_public_value = other
        self._shared_secret = shared

    def get_other_public_value(self) -> bytes:
        """The peer value as a chunk; DHNotReady until the exchange is complete."""
        self._check_alive()
        if self._shared_secret is None:
            raise DHNotReady("Peer public value not set")
        return bytes(self._other_public_value)

    def get_shared_secret(self) -> bytes:
        self._check_alive()
        if self._shared_secret is None:
            raise DHNotReady("Shared secret not computed")
        return bytes(self._shared_secret)

    def destroy(self) -> None:
        """Wipe and release every value that was actually computed."""
        if self._destroyed:
            return
        for name in (
            "_shared_secret",
            "_other_public_value",
            "_my_public_value",
            "_private_exponent",
            "_modulus",
        ):
            buffer = getattr(self, name)
            if buffer is not None:
                self._allocator.free(buffer)
                setattr(self, name, None)
        self._destroyed = True

    def __enter__(self) -> "DiffieHellman":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.destroy()

    def __repr__(self) -> str:
        if self._destroyed:
            state = "destroyed"
        elif self._shared_secret is not None:
            state = "shared-computed"
        elif self._my_public_value is not None:
            state = "public-computed"
        else:
            state = "ready"
        return f"<DiffieHellman {self._group.group_id.name} {state}>"


def create(
    group_id: Optional[Union[DiffieHellmanGroup, int]] = None,
    allocator: Optional[Allocator] = None,
    random_source=None,
    strict: Optional[bool] = None,
) -> DiffieHellman:
    """
    Build a DiffieHellman object for `group_id` (the configured default group
    when None). Raises UnsupportedGroup, RandomnessUnavailable or
    AllocationFailure; nothing stays allocated when construction fails.
    """
    if group_id is None or strict is None:
        from ikedh.common.config import get_settings

        settings = get_settings()
        if group_id is None:
            group_id = settings.default_group
        if strict is None:
            strict = settings.strict_public_values

    group = resolve(group_id)
    return DiffieHellman(group, allocator=allocator, random_source=random_source, strict=strict)


__all__ = [
    "create",
    "DiffieHellman",
    "validate_public_value",
    "DHError",
    "DHNotReady",
    "DHStateError",
    "InvalidPublicValue",
    "UnsupportedGroup",
    "RandomnessUnavailable",
    "AllocationFailure",
]
