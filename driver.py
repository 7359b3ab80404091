"""
CART File Driver
================
Byte-addressable files on top of the cartridge memory system.

The controller only knows frames: 1024-byte blocks grouped 1024 to a
cartridge, reachable one at a time through ``transfer(word, buf)``.
This module supplies the rest:

  - FrameAllocator  hands out (cartridge, frame) addresses lowest-first
  - FileTable       path -> FileRecord, with stable integer handles
  - CartDriver      power on/off plus open/close/read/write/seek, turning
                    every byte range into LDCART + RDFRME / WRFRME calls

A file's frame list is ordered: entry i holds file bytes
[i * 1024, (i + 1) * 1024).  Writes are read-modify-write on each frame
they touch, so partial-frame writes never clobber neighbouring bytes.

Errors are raised as CartError subclasses.  A DeviceError part-way
through a multi-frame read or write leaves the cursor wherever the last
completed frame put it; callers should seek before retrying.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterator, Optional

from registers import (
    MAX_CARTRIDGES, CARTRIDGE_SIZE, FRAME_SIZE,
    CartOp, pack, unpack, describe,
)

logger = logging.getLogger(__name__)

MAX_TOTAL_FILES = 1024       # records per power-on session
MAX_PATH_LENGTH = 127        # characters


# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class CartError(Exception):
    """Base for every driver-level failure."""


class InvalidHandleError(CartError):
    pass


class NotOpenError(CartError):
    pass


class AlreadyOpenError(CartError):
    pass


class OutOfRangeError(CartError):
    pass


class DeviceFullError(CartError):
    pass


class TooManyFilesError(CartError):
    pass


class DeviceError(CartError):
    """The controller reported failure (RT1 set) for a command."""

    def __init__(self, message: str, word: Optional[int] = None):
        super().__init__(message)
        self.word = word

    @property
    def registers(self):
        return unpack(self.word) if self.word is not None else None


# ---------------------------------------------------------------------------
#  Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True, order=True)
class FrameAddress:
    """One physical frame: (cartridge, frame)."""
    cartridge: int
    frame: int

    def __str__(self) -> str:
        return f"{self.cartridge}:{self.frame}"


@dataclass
class FileRecord:
    path: str
    handle: int
    is_open: bool = False
    end_position: int = 0       # logical length in bytes
    position: int = 0           # cursor
    frames: list[FrameAddress] = field(default_factory=list)

    @property
    def capacity(self) -> int:
        """Bytes addressable through the current frame list."""
        return len(self.frames) * FRAME_SIZE


def _frames_needed(nbytes: int) -> int:
    """Number of frames needed to hold *nbytes*."""
    return (nbytes + FRAME_SIZE - 1) // FRAME_SIZE


# ---------------------------------------------------------------------------
#  Frame allocator
# ---------------------------------------------------------------------------

class FrameAllocator:
    """Free-frame pool over the first *cartridges* cartridges.

    Frames are never returned, so the pool is a single cursor walking the
    address space in (cartridge, frame) order.  The owner is recorded in
    the same step that moves the cursor.
    """

    def __init__(self, cartridges: int = MAX_CARTRIDGES,
                 frames_per_cartridge: int = CARTRIDGE_SIZE):
        self.cartridges = cartridges
        self.frames_per_cartridge = frames_per_cartridge
        self.reset()

    def reset(self):
        self._next = 0
        self._owners: dict[FrameAddress, int] = {}

    @property
    def total(self) -> int:
        return self.cartridges * self.frames_per_cartridge

    @property
    def used_count(self) -> int:
        return self._next

    @property
    def free_count(self) -> int:
        return self.total - self._next

    def allocate(self, owner: int) -> FrameAddress:
        """Take the lowest free frame and assign it to handle *owner*."""
        if self._next >= self.total:
            logger.warning("frame pool exhausted (%d frames)", self.total)
            raise DeviceFullError(f"No free frames ({self.total} in use)")
        cart, frame = divmod(self._next, self.frames_per_cartridge)
        addr = FrameAddress(cart, frame)
        self._owners[addr] = owner
        self._next += 1
        return addr

    def owner_of(self, addr: FrameAddress) -> Optional[int]:
        return self._owners.get(addr)


# ---------------------------------------------------------------------------
#  File table
# ---------------------------------------------------------------------------

class FileTable:
    """Maps paths to records; a handle is the record's index."""

    def __init__(self, max_files: int = MAX_TOTAL_FILES):
        self.max_files = max_files
        self.reset()

    def reset(self):
        self._records: list[FileRecord] = []
        self._by_path: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[FileRecord]:
        return iter(self._records)

    def handle_of(self, path: str) -> Optional[int]:
        return self._by_path.get(path)

    def open(self, path: str) -> int:
        handle = self._by_path.get(path)
        if handle is not None:
            rec = self._records[handle]
            if rec.is_open:
                raise AlreadyOpenError(f"File already open: {path!r}")
            rec.is_open = True
            rec.position = 0
            return handle

        if len(self._records) >= self.max_files:
            raise TooManyFilesError(f"File table full ({self.max_files} files)")
        handle = len(self._records)
        self._records.append(FileRecord(path, handle, is_open=True))
        self._by_path[path] = handle
        logger.info("created %r as handle %d", path, handle)
        return handle

    def close(self, handle: int):
        self.resolve(handle).is_open = False

    def lookup(self, handle: int) -> FileRecord:
        """Return the record for *handle*, open or not."""
        if isinstance(handle, bool) or not isinstance(handle, int) \
                or not 0 <= handle < len(self._records):
            raise InvalidHandleError(f"Unknown file handle: {handle!r}")
        return self._records[handle]

    def resolve(self, handle: int) -> FileRecord:
        """Return the record for *handle*, which must be open."""
        rec = self.lookup(handle)
        if not rec.is_open:
            raise NotOpenError(f"File not open: {rec.path!r} (handle {handle})")
        return rec


# ---------------------------------------------------------------------------
#  Driver
# ---------------------------------------------------------------------------

class CartDriver:
    """File interface to one cartridge controller.

    *bus* is anything with ``transfer(word, buf=None) -> word``; see
    controller.CartController for the simulated device.
    """

    def __init__(self, bus, cartridges: int = MAX_CARTRIDGES,
                 max_files: int = MAX_TOTAL_FILES,
                 max_path: int = MAX_PATH_LENGTH):
        if not 1 <= cartridges <= MAX_CARTRIDGES:
            raise ValueError(f"cartridges must be 1-{MAX_CARTRIDGES}, "
                             f"got {cartridges}")
        self.bus = bus
        self.cartridges = cartridges
        self.max_path = max_path
        self.table = FileTable(max_files)
        self.allocator = FrameAllocator(cartridges)
        self.powered = False
        self._scratch = bytearray(FRAME_SIZE)

    # -- bus helpers ----------------------------------------------------------

    def _io(self, op: CartOp, cartridge: int = 0, frame: int = 0,
            buf: Optional[bytearray] = None) -> int:
        """Issue one command; raise DeviceError if RT1 comes back set."""
        if buf is not None and len(buf) != FRAME_SIZE:
            raise ValueError(f"Frame buffer must be {FRAME_SIZE} bytes, "
                             f"got {len(buf)}")
        word = pack(op, 0, 0, cartridge, frame)
        reply = self.bus.transfer(word, buf)
        logger.debug("bus %s", describe(reply))
        if unpack(reply).failed:
            logger.warning("bus failure: %s", describe(reply))
            raise DeviceError(f"{op.name} failed (cartridge {cartridge}, "
                              f"frame {frame})", reply)
        return reply

    def _read_frame(self, addr: FrameAddress, buf: bytearray):
        self._io(CartOp.LDCART, cartridge=addr.cartridge)
        self._io(CartOp.RDFRME, addr.cartridge, addr.frame, buf)

    def _write_frame(self, addr: FrameAddress, buf: bytearray):
        self._io(CartOp.LDCART, cartridge=addr.cartridge)
        self._io(CartOp.WRFRME, addr.cartridge, addr.frame, buf)

    def _require_power(self):
        if not self.powered:
            raise DeviceError("Device is powered off")

    def _resolve(self, handle: int) -> FileRecord:
        self._require_power()
        return self.table.resolve(handle)

    # -- lifecycle ------------------------------------------------------------

    def power_on(self):
        """Initialise the controller, zero every cartridge, reset the tables."""
        self.powered = False
        self._io(CartOp.INITMS)
        for idx in range(self.cartridges):
            self._io(CartOp.LDCART, cartridge=idx)
            self._io(CartOp.BZERO)
        self.table.reset()
        self.allocator.reset()
        self.powered = True
        logger.info("powered on: %d cartridges, %d frames free",
                    self.cartridges, self.allocator.free_count)

    def power_off(self):
        """Power the controller down.  Open files are left as they are."""
        self._io(CartOp.POWOFF)
        self.powered = False
        logger.info("powered off (%d files, %d frames used)",
                    len(self.table), self.allocator.used_count)

    # -- file operations ------------------------------------------------------

    def open(self, path: str) -> int:
        self._require_power()
        if not isinstance(path, str) or not path:
            raise ValueError(f"Invalid path: {path!r}")
        if len(path) > self.max_path:
            raise ValueError(f"Path too long: {path!r} (max {self.max_path})")
        return self.table.open(path)

    def close(self, handle: int):
        self._require_power()
        self.table.close(handle)

    def read(self, handle: int, count: int) -> bytes:
        """Read up to *count* bytes from the cursor; short only at EOF."""
        rec = self._resolve(handle)
        if count < 0:
            raise ValueError(f"Negative read count: {count}")
        to_read = max(0, min(count, rec.end_position - rec.position))

        out = bytearray()
        scratch = self._scratch
        while len(out) < to_read:
            index, offset = divmod(rec.position, FRAME_SIZE)
            self._read_frame(rec.frames[index], scratch)
            n = min(FRAME_SIZE - offset, to_read - len(out))
            out += scratch[offset:offset + n]
            rec.position += n
        return bytes(out)

    def write(self, handle: int, data: bytes | bytearray) -> int:
        """Write *data* at the cursor, growing the file as needed."""
        rec = self._resolve(handle)
        view = memoryview(data).cast("B")
        length = len(view)
        if length == 0:
            return 0

        # Frames appended here stay with the file even if a later one fails.
        for _ in range(_frames_needed(rec.position + length) - len(rec.frames)):
            rec.frames.append(self.allocator.allocate(rec.handle))

        done = 0
        scratch = self._scratch
        while done < length:
            index, offset = divmod(rec.position, FRAME_SIZE)
            addr = rec.frames[index]
            n = min(FRAME_SIZE - offset, length - done)
            self._read_frame(addr, scratch)
            scratch[offset:offset + n] = view[done:done + n]
            self._write_frame(addr, scratch)
            done += n
            rec.position += n
            if rec.position > rec.end_position:
                rec.end_position = rec.position
        return length

    def seek(self, handle: int, offset: int):
        rec = self._resolve(handle)
        if not 0 <= offset <= rec.end_position:
            raise OutOfRangeError(f"Seek to {offset} outside 0-{rec.end_position} "
                                  f"in {rec.path!r}")
        rec.position = offset

    # -- introspection --------------------------------------------------------

    def tell(self, handle: int) -> int:
        return self.table.lookup(handle).position

    def size(self, handle: int) -> int:
        return self.table.lookup(handle).end_position

    def frames(self, handle: int) -> list[FrameAddress]:
        return list(self.table.lookup(handle).frames)

    def info(self) -> dict:
        return {
            "powered": self.powered,
            "cartridges": self.cartridges,
            "files": len(self.table),
            "open_files": sum(1 for r in self.table if r.is_open),
            "frames_used": self.allocator.used_count,
            "frames_free": self.allocator.free_count,
            "bytes_stored": sum(r.end_position for r in self.table),
            "capacity": self.allocator.total * FRAME_SIZE,
        }

    def check(self) -> list[str]:
        """Verify table/allocator invariants.  Returns a list of problems."""
        problems: list[str] = []
        seen: dict[FrameAddress, str] = {}
        for rec in self.table:
            if not 0 <= rec.position <= rec.end_position:
                problems.append(f"{rec.path}: cursor {rec.position} outside "
                                f"0-{rec.end_position}")
            if rec.end_position > rec.capacity:
                problems.append(f"{rec.path}: length {rec.end_position} exceeds "
                                f"{len(rec.frames)} frames")
            for addr in rec.frames:
                if addr in seen:
                    problems.append(f"frame {addr} shared by {seen[addr]} "
                                    f"and {rec.path}")
                seen[addr] = rec.path
                if self.allocator.owner_of(addr) != rec.handle:
                    problems.append(f"{rec.path}: frame {addr} not allocated "
                                    f"to handle {rec.handle}")
        if len(seen) != self.allocator.used_count:
            problems.append(f"{self.allocator.used_count} frames allocated, "
                            f"{len(seen)} referenced by files")
        return problems
