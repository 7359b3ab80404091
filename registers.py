"""
CART Controller Register Codec
==============================
Packs and unpacks the 64-bit transfer word exchanged with the cartridge
controller over its single bus primitive.

Transfer word layout (bit 0 is the MSB):

  Bits    Register
  ------  ------------------------------------------------------------
   0-7    KY1  opcode                         (8 bits,  shift 56)
   8-15   KY2  key register 2, unused         (8 bits,  shift 48)
    16    RT1  return code, 0 = ok 1 = fail   (1 bit,   shift 47)
  17-32   CT1  cartridge index                (16 bits, shift 31)
  33-48   FM1  frame index                    (16 bits, shift 15)
  49-63   unused, always zero

Values wider than their field are masked, exactly as a hardware register
would truncate them.
"""

from __future__ import annotations

from enum import IntEnum
from typing import NamedTuple

# ---------------------------------------------------------------------------
#  Device geometry
# ---------------------------------------------------------------------------

MAX_CARTRIDGES = 64          # cartridges per controller
CARTRIDGE_SIZE = 1024        # frames per cartridge
FRAME_SIZE     = 1024        # bytes per frame

DEVICE_CAPACITY = MAX_CARTRIDGES * CARTRIDGE_SIZE * FRAME_SIZE   # 64 MiB

# ---------------------------------------------------------------------------
#  Field placement
# ---------------------------------------------------------------------------

KY1_SHIFT, KY1_MASK = 56, 0xFF
KY2_SHIFT, KY2_MASK = 48, 0xFF
RT1_SHIFT, RT1_MASK = 47, 0x1
CT1_SHIFT, CT1_MASK = 31, 0xFFFF
FM1_SHIFT, FM1_MASK = 15, 0xFFFF

WORD_MASK = 0xFFFF_FFFF_FFFF_FFFF

STATUS_OK   = 0
STATUS_FAIL = 1


class CartOp(IntEnum):
    """Controller opcodes (KY1)."""
    INITMS = 0   # initialise the memory system
    BZERO  = 1   # zero the loaded cartridge
    LDCART = 2   # load (mount) a cartridge
    RDFRME = 3   # read a frame of the loaded cartridge
    WRFRME = 4   # write a frame of the loaded cartridge
    POWOFF = 5   # power off the memory system


OP_MAXVAL = 6


class Registers(NamedTuple):
    """Decoded view of a transfer word."""
    opcode: int
    key2: int
    status: int
    cartridge: int
    frame: int

    @property
    def failed(self) -> bool:
        return self.status != STATUS_OK

    def pack(self) -> int:
        return pack(self.opcode, self.key2, self.status,
                    self.cartridge, self.frame)


def pack(opcode: int, key2: int = 0, status: int = 0,
         cartridge: int = 0, frame: int = 0) -> int:
    """Build a transfer word.  Out-of-range field values are masked."""
    return (((opcode & KY1_MASK) << KY1_SHIFT)
            | ((key2 & KY2_MASK) << KY2_SHIFT)
            | ((status & RT1_MASK) << RT1_SHIFT)
            | ((cartridge & CT1_MASK) << CT1_SHIFT)
            | ((frame & FM1_MASK) << FM1_SHIFT))


def unpack(word: int) -> Registers:
    """Split a transfer word into its register fields."""
    word &= WORD_MASK
    return Registers(
        opcode=(word >> KY1_SHIFT) & KY1_MASK,
        key2=(word >> KY2_SHIFT) & KY2_MASK,
        status=(word >> RT1_SHIFT) & RT1_MASK,
        cartridge=(word >> CT1_SHIFT) & CT1_MASK,
        frame=(word >> FM1_SHIFT) & FM1_MASK,
    )


def with_status(word: int, status: int) -> int:
    """Return *word* with only the RT1 bit replaced."""
    word &= ~(RT1_MASK << RT1_SHIFT) & WORD_MASK
    return word | ((status & RT1_MASK) << RT1_SHIFT)


def op_name(opcode: int) -> str:
    if opcode >= OP_MAXVAL:
        return f"OP?{opcode:#04x}"
    return CartOp(opcode).name


def describe(word: int) -> str:
    """One-line rendering of a transfer word, for log output."""
    r = unpack(word)
    return (f"{op_name(r.opcode)} ct={r.cartridge} fm={r.frame} "
            f"rt={r.status} [{word:016x}]")
