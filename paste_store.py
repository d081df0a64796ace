"""
In-memory paste storage with bounded capacity.

Two variants share one identifier namespace model:
    PasteStore        - a single global buffer, oldest pastes rotate out
    DevicePasteStore  - every device owns a small quota of pastes
"""

import logging
import threading
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

from idgen import IdentifierGenerator, generate_device_code

logger = logging.getLogger("pastebin")


class PasteError(Exception):
    """Base class for errors surfaced by the stores"""

    status_code = 500
    message = "Internal Server Error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.message
        super().__init__(self.detail)


class SizeLimitError(PasteError):
    status_code = 413
    message = "Payload Too Large"


class EmptyPasteError(SizeLimitError):
    status_code = 400
    message = "Paste is empty"


class NotFoundError(PasteError):
    status_code = 404
    message = "Not Found"


class AuthorizationError(PasteError):
    status_code = 401
    message = "Unauthorized"


class IdentifierSpaceExhausted(PasteError):
    """Every generated identifier collided with a live one"""


@dataclass(frozen=True)
class Paste:
    content: bytes
    owner: Optional[str] = None


class _BoundedStore:
    """Shared plumbing: size checks, identifier minting and the lock"""

    def __init__(
        self,
        max_paste_size: int,
        generator: Optional[IdentifierGenerator] = None,
        max_id_attempts: int = 32,
    ):
        if max_paste_size < 1:
            raise ValueError("max_paste_size must be >= 1")
        if max_id_attempts < 1:
            raise ValueError("max_id_attempts must be >= 1")
        self.max_paste_size = max_paste_size
        self.max_id_attempts = max_id_attempts
        self.generator = generator or IdentifierGenerator()
        self._entries: "OrderedDict[str, Paste]" = OrderedDict()
        self._lock = threading.Lock()
        self._evicted = 0

    def _check_size(self, content) -> bytes:
        if not isinstance(content, (bytes, bytearray, memoryview)):
            raise TypeError(f"Paste content must be bytes, not {type(content).__name__}")
        data = bytes(content)
        if not data:
            raise EmptyPasteError()
        if len(data) > self.max_paste_size:
            raise SizeLimitError(
                f"Paste of {len(data)} bytes exceeds max size of {self.max_paste_size} bytes"
            )
        return data

    def _mint_id(self) -> str:
        # Caller holds self._lock
        for _ in range(self.max_id_attempts):
            candidate = self.generator.generate()
            if candidate not in self._entries:
                return candidate
            logger.debug(f"Identifier collision on {candidate}, retrying")
        logger.critical(
            f"No free identifier after {self.max_id_attempts} attempts "
            f"({len(self._entries)} live pastes), identifier space is saturated"
        )
        raise IdentifierSpaceExhausted("Could not allocate a paste identifier")

    def _new_paste(self, data: bytes, owner: Optional[str]) -> Paste:
        return Paste(content=data, owner=owner)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, identifier: str) -> bool:
        with self._lock:
            return identifier in self._entries

    def stats(self) -> dict:
        with self._lock:
            return {
                "pastes": len(self._entries),
                "bytes": sum(len(p.content) for p in self._entries.values()),
                "evicted": self._evicted,
            }


class PasteStore(_BoundedStore):
    """Global rotating buffer: once full, the oldest paste is dropped on every put"""

    def __init__(
        self,
        buffer_size: int = 1000,
        max_paste_size: int = 32 * 1024,
        generator: Optional[IdentifierGenerator] = None,
        max_id_attempts: int = 32,
    ):
        if buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")
        super().__init__(max_paste_size, generator, max_id_attempts)
        self.buffer_size = buffer_size

    @property
    def capacity(self) -> int:
        return self.buffer_size

    def put(self, content: bytes, owner: Optional[str] = None) -> str:
        """
        Store a paste and return its identifier.

        Args:
            content: Raw paste bytes, non-empty and at most max_paste_size
            owner: Recorded on the paste but not used for access in this variant

        Raises:
            EmptyPasteError, SizeLimitError: before anything is stored
            IdentifierSpaceExhausted: if no free identifier could be minted
        """
        data = self._check_size(content)
        with self._lock:
            paste_id = self._mint_id()
            self._entries[paste_id] = self._new_paste(data, owner)
            while len(self._entries) > self.buffer_size:
                old_id, _ = self._entries.popitem(last=False)
                self._evicted += 1
                logger.debug(f"Evicted paste {old_id} (buffer full)")
        return paste_id

    def get(self, identifier: str, requester: Optional[str] = None) -> bytes:
        """Return the content of a live paste; reads never change eviction order"""
        with self._lock:
            paste = self._entries.get(identifier)
        if paste is None:
            raise NotFoundError()
        return paste.content

    def list_ids(self, requester: Optional[str] = None) -> List[str]:
        """Snapshot of live identifiers, oldest first"""
        with self._lock:
            return list(self._entries)

    def stats(self) -> dict:
        stats = super().stats()
        stats["capacity"] = self.buffer_size
        return stats


class DevicePasteStore(_BoundedStore):
    """
    Pastes partitioned by owning device.

    Identifiers live in one flat map; a per-device index keeps each device's
    identifiers oldest first so its quota can be enforced without touching
    other devices.
    """

    def __init__(
        self,
        device_quota: int = 2,
        max_paste_size: int = 32 * 1024,
        generator: Optional[IdentifierGenerator] = None,
        max_id_attempts: int = 32,
    ):
        if device_quota < 1:
            raise ValueError("device_quota must be >= 1")
        super().__init__(max_paste_size, generator, max_id_attempts)
        self.device_quota = device_quota
        self._by_device: Dict[str, Deque[str]] = {}

    @property
    def capacity(self) -> int:
        return self.device_quota

    def put(self, content: bytes, owner: Optional[str] = None) -> str:
        """
        Store a paste for a device and return its identifier.

        The device's oldest pastes are evicted until it is back at quota.

        Raises:
            AuthorizationError: if no owner is given
            EmptyPasteError, SizeLimitError: before anything is stored
            IdentifierSpaceExhausted: if no free identifier could be minted
        """
        if not owner:
            raise AuthorizationError("A device code is required to store pastes")
        data = self._check_size(content)
        with self._lock:
            paste_id = self._mint_id()
            self._entries[paste_id] = self._new_paste(data, owner)
            device_ids = self._by_device.setdefault(owner, deque())
            device_ids.append(paste_id)
            while len(device_ids) > self.device_quota:
                old_id = device_ids.popleft()
                del self._entries[old_id]
                self._evicted += 1
                logger.debug(f"Evicted paste {old_id} (device {owner[:4]}... over quota)")
        return paste_id

    def get(self, identifier: str, requester: Optional[str] = None) -> bytes:
        """
        Return a paste's content if the requester owns it.

        A paste owned by another device is reported exactly like a missing one.
        """
        if not requester:
            raise AuthorizationError("A device code is required to read pastes")
        with self._lock:
            paste = self._entries.get(identifier)
        if paste is None:
            raise NotFoundError()
        if paste.owner != requester:
            logger.debug(f"Device {requester[:4]}... asked for paste {identifier} it does not own")
            raise NotFoundError()
        return paste.content

    def list_ids(self, requester: Optional[str] = None) -> List[str]:
        """Snapshot of the requester's live identifiers, oldest first"""
        if not requester:
            raise AuthorizationError("A device code is required to list pastes")
        with self._lock:
            return list(self._by_device.get(requester, ()))

    def device_count(self, owner: str) -> int:
        with self._lock:
            return len(self._by_device.get(owner, ()))

    def new_device_code(self) -> str:
        """Issue a device code that does not own any live paste"""
        rng = getattr(self.generator, "rng", None)
        with self._lock:
            for _ in range(self.max_id_attempts):
                code = generate_device_code(rng)
                if code not in self._by_device:
                    return code
        logger.critical(f"No free device code after {self.max_id_attempts} attempts")
        raise IdentifierSpaceExhausted("Could not allocate a device code")

    def stats(self) -> dict:
        stats = super().stats()
        with self._lock:
            stats["devices"] = len(self._by_device)
        stats["device_quota"] = self.device_quota
        return stats
