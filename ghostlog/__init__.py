from .main import *
from .transport import (
    DirectoryStore,
    GatedStore,
    HttpStore,
    MemoryStore,
    ObjectStore,
    Pacer,
    Page,
    SharedSecretGate,
    StoredObject,
    TransportAdapter,
    open_store,
)
from .version import __version__


def xor_encode(data: bytes, key): return ghostlog.xor_encode(data, key)
def xor_decode(data: bytes, key): return ghostlog.xor_decode(data, key)
def compress(data: bytes): return ghostlog.compress(data)
def decompress(data: bytes): return ghostlog.decompress(data)
def fragment(payload: bytes, max_part_size: int): return ghostlog.fragment(payload, max_part_size)
def reassemble(envelopes, key): return ghostlog.reassemble(envelopes, key)


def build(name: str, payload: bytes, key, part_index: int = 1, total_parts: int = 1, *, compressed: bool = False):
    return ghostlog.build_envelope(name, payload, key, part_index, total_parts, compressed=compressed)


def parse(envelope, key):
    return ghostlog.parse_envelope(envelope, key)


def cloak(file: str, key: str, *, compressed: bool = True, chunk_size: int | None = None, carrier: str = "structured", output: str | None = None, silent: bool = False):
    """
    Disguise a file as one or more crash-report logs.

    Args:
        file: Path of the file to hide
        key: Shared cipher key, needed again by ``uncloak``
        compressed: gzip the payload before ciphering
        chunk_size: Max bytes per part (default 3 MiB)
        carrier: "structured" (JSON crash fragment) or "text" (core-dump log)
        output: Directory for the logs (default: next to the input)
        silent: Suppress progress output

    Returns:
        List of written log paths, one per part, named crash_<id>_p<NNN>.log

    Pipeline:
        payload -> gzip (optional) -> fragment -> per part:
        name + 0x1f1e + slice -> repeating-key XOR -> lowercase hex -> carrier

    Security notes:
        - The XOR key is reused for every byte of every payload
        - There is no integrity tag; a wrong key decodes to garbage
        - The disguise defeats signature/extension filters, not analysis
    """
    options = {"key": key, "compressed": compressed, "carrier": carrier}
    if chunk_size:
        options["chunk_size"] = chunk_size
    config = CodecConfig(**options)
    return ghostlog.cloak_file(file, config, output, silent=silent)


def uncloak(files, key: str, output: str | None = None, carrier: str = "structured"):
    if isinstance(files, str):
        files = [files]
    return ghostlog.uncloak_files(files, key, output, carrier)
