class Bitfield:
    """
    A peer's advertised set of pieces, stored the way it goes over the wire:
    one bit per piece, high bit of the first byte is piece 0.
    """

    def __init__(self, num_pieces: int, raw: bytes = b''):
        self.num_pieces = num_pieces
        self.bits = bytearray((num_pieces + 7) // 8)
        if raw:
            self.load(raw)

    def load(self, raw: bytes):
        """Replace the contents with a received bitfield payload.

        Raises ValueError if the payload has the wrong byte length or sets
        any of the spare bits past the last piece.
        """
        if len(raw) != len(self.bits):
            raise ValueError(f"bitfield is {len(raw)} bytes, expected {len(self.bits)}")

        spare = len(self.bits) * 8 - self.num_pieces
        if spare and raw[-1] & ((1 << spare) - 1):
            raise ValueError("bitfield sets spare bits past the last piece")

        self.bits[:] = raw

    def has_piece(self, index: int) -> bool:
        if not 0 <= index < self.num_pieces:
            return False
        # index >> 3 picks the byte, 7 - (index & 7) counts the bit from the left
        return bool((self.bits[index >> 3] >> (7 - (index & 7))) & 1)

    def set_piece(self, index: int):
        if not 0 <= index < self.num_pieces:
            raise IndexError(f"piece index {index} out of range")
        self.bits[index >> 3] |= 1 << (7 - (index & 7))

    def count(self) -> int:
        return sum(bin(byte).count("1") for byte in self.bits)

    def __bytes__(self) -> bytes:
        return bytes(self.bits)
