"""
CART Controller Simulator
=========================
Software model of the cartridge memory system that sits behind the
driver's single bus primitive, ``transfer(word, buf)``.

The store is 64 cartridges x 1024 frames x 1024 bytes (64 MiB).
Cartridges are materialised lazily, so an untouched controller costs
almost nothing; a zeroed cartridge simply drops its backing buffer.

Command semantics (every reply is the request word with RT1 set):

  INITMS   power the memory system on, unmount any cartridge
  BZERO    zero every frame of the loaded cartridge
  LDCART   mount cartridge CT1
  RDFRME   copy frame FM1 of the loaded cartridge into *buf*
  WRFRME   copy *buf* into frame FM1 of the loaded cartridge
  POWOFF   flush the host image (if any) and power down

Anything other than INITMS while powered down fails, as does a frame
command with no cartridge mounted or a buffer that is not exactly one
frame long.
"""

from __future__ import annotations

import logging
from collections import Counter
from pathlib import Path
from typing import Optional

from registers import (
    MAX_CARTRIDGES, CARTRIDGE_SIZE, FRAME_SIZE, DEVICE_CAPACITY,
    STATUS_OK, STATUS_FAIL, OP_MAXVAL, CartOp, unpack, with_status, describe,
)

logger = logging.getLogger(__name__)

CARTRIDGE_BYTES = CARTRIDGE_SIZE * FRAME_SIZE


class CartController:
    """Cartridge memory system, optionally backed by a host image file."""

    def __init__(self, image_path: Optional[str | Path] = None):
        self.image_path: Optional[Path] = None
        self._cartridges: dict[int, bytearray] = {}
        self.powered: bool = False
        self.loaded: Optional[int] = None    # mounted cartridge index
        self.ops: Counter[str] = Counter()
        self.failures: int = 0
        self._faults: dict[int, int] = {}    # opcode -> commands to let through

        if image_path:
            self.load_image(image_path)

    # -- host image ---------------------------------------------------------

    def load_image(self, path: str | Path):
        """Load cartridge contents from a host file.

        A missing file gives a blank store; the file is created on the
        next flush.
        """
        path = Path(path)
        self.image_path = path
        self._cartridges.clear()
        if not path.exists():
            return
        data = path.read_bytes()
        if len(data) > DEVICE_CAPACITY:
            raise ValueError(f"Image too large: {len(data)} bytes "
                             f"(max {DEVICE_CAPACITY})")
        for idx in range(MAX_CARTRIDGES):
            chunk = data[idx * CARTRIDGE_BYTES:(idx + 1) * CARTRIDGE_BYTES]
            if chunk.strip(b"\x00"):
                cart = bytearray(CARTRIDGE_BYTES)
                cart[:len(chunk)] = chunk
                self._cartridges[idx] = cart

    def save_image(self):
        """Flush all cartridges back to the host file."""
        if self.image_path is None:
            return
        with open(self.image_path, "wb") as f:
            for idx in range(MAX_CARTRIDGES):
                cart = self._cartridges.get(idx)
                if cart is None:
                    f.write(bytes(CARTRIDGE_BYTES))
                else:
                    f.write(cart)

    # -- test hooks ---------------------------------------------------------

    def inject_fault(self, opcode: int, after: int = 0):
        """Fail the (after+1)-th upcoming command carrying *opcode*."""
        self._faults[int(CartOp(opcode))] = after

    def clear_faults(self):
        self._faults.clear()

    def peek_frame(self, cartridge: int, frame: int) -> bytes:
        """Direct frame read, bypassing the bus (diagnostics only)."""
        cart = self._cartridges.get(cartridge)
        if cart is None:
            return bytes(FRAME_SIZE)
        off = frame * FRAME_SIZE
        return bytes(cart[off:off + FRAME_SIZE])

    def stats(self) -> dict:
        return {
            "powered": self.powered,
            "loaded": self.loaded,
            "cartridges_touched": len(self._cartridges),
            "failures": self.failures,
            **{name.lower(): self.ops[name] for name in CartOp.__members__},
        }

    # -- bus ----------------------------------------------------------------

    def transfer(self, word: int, buf: Optional[bytearray] = None) -> int:
        """Execute one command word; return it with RT1 updated."""
        regs = unpack(word)
        if self._take_fault(regs.opcode):
            self.ops[CartOp(regs.opcode).name] += 1
            ok = False
        else:
            ok = self._execute(regs, buf)

        reply = with_status(word, STATUS_OK if ok else STATUS_FAIL)
        if not ok:
            self.failures += 1
            logger.warning("controller rejected %s", describe(word))
        else:
            logger.debug("controller %s", describe(reply))
        return reply

    def _take_fault(self, opcode: int) -> bool:
        if opcode not in self._faults:
            return False
        if self._faults[opcode] > 0:
            self._faults[opcode] -= 1
            return False
        del self._faults[opcode]
        return True

    def _execute(self, regs, buf: Optional[bytearray]) -> bool:
        if regs.opcode >= OP_MAXVAL:
            return False
        op = CartOp(regs.opcode)
        self.ops[op.name] += 1

        if op == CartOp.INITMS:
            self.powered = True
            self.loaded = None
            return True
        if not self.powered:
            return False

        if op == CartOp.POWOFF:
            try:
                self.save_image()
            except OSError as e:
                logger.warning("image flush to %s failed: %s", self.image_path, e)
                return False
            self.powered = False
            self.loaded = None
            return True

        if op == CartOp.LDCART:
            if regs.cartridge >= MAX_CARTRIDGES:
                return False
            self.loaded = regs.cartridge
            return True

        if self.loaded is None:
            return False

        if op == CartOp.BZERO:
            self._cartridges.pop(self.loaded, None)
            return True

        # RDFRME / WRFRME
        if regs.frame >= CARTRIDGE_SIZE:
            return False
        if buf is None or len(buf) != FRAME_SIZE:
            return False
        off = regs.frame * FRAME_SIZE

        if op == CartOp.RDFRME:
            if not isinstance(buf, (bytearray, memoryview)) or \
                    getattr(buf, "readonly", False):
                return False
            cart = self._cartridges.get(self.loaded)
            if cart is None:
                buf[:] = bytes(FRAME_SIZE)
            else:
                buf[:] = cart[off:off + FRAME_SIZE]
            return True

        cart = self._cartridges.get(self.loaded)
        if cart is None:
            cart = self._cartridges[self.loaded] = bytearray(CARTRIDGE_BYTES)
        cart[off:off + FRAME_SIZE] = buf
        return True
