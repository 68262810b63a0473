"""
Chain Hashing Service

Handles fixed-width packing and keccak-256 node hashing.
Same input → same hash. Always. Forever.

This is SACRED GROUND.

If this breaks, every chain becomes unverifiable, and every claim
window built against the old encoding stops verifying.

PACKING RULES (byte-identical to Solidity abi.encodePacked):
1. uint256: 32-byte big-endian word
2. address: 20 raw bytes
3. bool: 1 byte, 0x01 or 0x00
4. bytes32: 32 raw bytes
5. No length prefixes, no padding between fields
6. Field order is the event's PACKED_LAYOUT, then the previous hash

NODE RULE:
    current_hash = keccak256(pack(fields) ++ previous_hash)
"""

from typing import Any, Iterable, Sequence

from Crypto.Hash import keccak


class CanonicalSerializationError(Exception):
    """Raised when a value cannot be packed into its declared width."""
    pass


class Hasher:
    """
    Fixed-width packing and chain hashing.

    IMMUTABLE CONTRACT:
    - Same fields + same previous hash → same node hash
    - Forever
    - Across platforms
    - Across implementation languages

    If you need to change the layout of an event, you MUST version it.
    """

    UINT256_BITS = 256
    PREVIOUS_HASH_TYPE = "bytes32"

    @staticmethod
    def _hex_to_bytes(value: Any, length: int, path: str) -> bytes:
        if isinstance(value, bytes):
            raw = value
        elif isinstance(value, str):
            body = value[2:] if value[:2] in ("0x", "0X") else value
            try:
                raw = bytes.fromhex(body)
            except ValueError:
                raise CanonicalSerializationError(
                    f"Cannot pack {path}: {value!r} is not valid hex"
                )
        else:
            raise CanonicalSerializationError(
                f"Cannot pack {type(value).__name__} at {path} as {length} bytes"
            )

        if len(raw) != length:
            raise CanonicalSerializationError(
                f"Cannot pack {path}: expected {length} bytes, got {len(raw)}"
            )
        return raw

    @classmethod
    def _pack_value(cls, type_name: str, value: Any, path: str) -> bytes:
        if type_name == "uint256":
            # bool is an int subclass; never let it pass as a number
            if isinstance(value, bool) or not isinstance(value, int):
                raise CanonicalSerializationError(
                    f"Cannot pack {type(value).__name__} at {path} as uint256"
                )
            if value < 0 or value.bit_length() > cls.UINT256_BITS:
                raise CanonicalSerializationError(
                    f"Value at {path} is out of uint256 range: {value}"
                )
            return value.to_bytes(32, "big")

        if type_name == "bool":
            if not isinstance(value, bool):
                raise CanonicalSerializationError(
                    f"Cannot pack {type(value).__name__} at {path} as bool"
                )
            return b"\x01" if value else b"\x00"

        if type_name == "address":
            return cls._hex_to_bytes(value, 20, path)

        if type_name == "bytes32":
            return cls._hex_to_bytes(value, 32, path)

        raise CanonicalSerializationError(f"Unknown packed type '{type_name}' at {path}")

    @classmethod
    def pack(cls, types: Sequence[str], values: Sequence[Any]) -> bytes:
        """
        Pack values into their fixed-width byte encoding.

        Args:
            types: Solidity type names, one per value
            values: The values to pack

        Returns:
            Concatenated fixed-width encoding

        Raises:
            CanonicalSerializationError: If a value does not fit its type
        """
        if len(types) != len(values):
            raise CanonicalSerializationError(
                f"Layout has {len(types)} fields but {len(values)} values were given"
            )
        return b"".join(
            cls._pack_value(type_name, value, f"[{i}]")
            for i, (type_name, value) in enumerate(zip(types, values))
        )

    @staticmethod
    def keccak256(data: bytes) -> str:
        """
        Hash bytes with keccak-256 (the pre-standard SHA-3 used by Ethereum).

        Returns:
            0x-prefixed lowercase hex digest (66 characters)
        """
        digest = keccak.new(digest_bits=256, data=data).hexdigest()
        return "0x" + digest

    @classmethod
    def append(
        cls,
        types: Iterable[str],
        values: Iterable[Any],
        previous_hash: str,
    ) -> str:
        """
        Compute the next chain head.

        Pure function of its inputs. Never fails for in-range values.

        Args:
            types: Layout of the event fields (without the previous hash)
            values: Event field values
            previous_hash: Current chain head (genesis is the zero hash)

        Returns:
            The new chain head
        """
        types = list(types) + [cls.PREVIOUS_HASH_TYPE]
        values = list(values) + [previous_hash]
        return cls.keccak256(cls.pack(types, values))

    @classmethod
    def hash_fields(cls, event_cls: Any, values: Sequence[Any], previous_hash: str) -> str:
        """Hash raw field values using an event class's PACKED_LAYOUT."""
        types = [type_name for _, type_name in event_cls.PACKED_LAYOUT]
        return cls.append(types, values, previous_hash)

    @classmethod
    def hash_event(cls, event: Any) -> str:
        """
        Recompute an event's node hash from its own fields.

        Uses event.previous_hash; ignores event.current_hash.
        """
        return cls.hash_fields(type(event), event.packed_values(), event.previous_hash)

    @classmethod
    def verify_event(cls, event: Any, expected_previous: str | None = None) -> bool:
        """
        Verify that an event's claimed hash matches its fields.

        Args:
            event: StakeEvent or RewardEvent
            expected_previous: If given, the event must also be chained onto it

        Returns:
            True if the hash (and linkage, when checked) is correct
        """
        if expected_previous is not None and not cls._constant_time_compare(
            event.previous_hash.lower(), expected_previous.lower()
        ):
            return False
        try:
            computed = cls.hash_event(event)
        except CanonicalSerializationError:
            return False
        return cls._constant_time_compare(computed, event.current_hash.lower())

    @staticmethod
    def _constant_time_compare(a: str, b: str) -> bool:
        """
        Compare two strings in constant time.

        Prevents timing attacks where an attacker could learn
        about the hash by measuring comparison time.
        """
        if len(a) != len(b):
            return False

        result = 0
        for x, y in zip(a, b):
            result |= ord(x) ^ ord(y)

        return result == 0
