# GHOSTLOG CARRIER ENGINE ->

import os as _os_module
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class GhostlogError(Exception):
    """Base class for every failure raised by the carrier engine."""


class FormatError(GhostlogError, ValueError):
    """Malformed hex, missing delimiter or missing carrier markers."""


class DecompressionError(GhostlogError, ValueError):
    """Compression flag set but the stream does not inflate."""


class IncompleteSetError(GhostlogError, ValueError):
    """Reassembly attempted on a gapped or inconsistent chunk set."""


class TransportError(GhostlogError, RuntimeError):
    """A storage collaborator operation failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


@dataclass(frozen=True)
class RawPayload:
    name: str
    data: bytes


@dataclass(frozen=True)
class Envelope:
    hex_text: str
    part_index: int
    total_parts: int
    compressed: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class CodecConfig:
    """Per-run knobs handed to the pipeline by value."""

    key: str
    compressed: bool = True
    chunk_size: int = 3 * 1024 * 1024
    carrier: str = "structured"
    pacing: float = 0.2

    def __post_init__(self):
        if not self.key:
            raise ValueError("key must not be empty")
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if self.pacing < 0:
            raise ValueError("pacing must not be negative")
        if self.carrier not in ghostlog.CARRIERS:
            raise ValueError(f"Unknown carrier '{self.carrier}'")

    @classmethod
    def from_env(cls, **overrides) -> "CodecConfig":
        values: Dict[str, Any] = {
            "key": _os_module.getenv("GHOSTLOG_KEY", ""),
            "compressed": _os_module.getenv("GHOSTLOG_COMPRESS", "1") == "1",
            "carrier": _os_module.getenv("GHOSTLOG_CARRIER", "structured").lower(),
        }
        chunk_size = ghostlog._env_int("GHOSTLOG_CHUNK_SIZE")
        if chunk_size is not None:
            values["chunk_size"] = chunk_size
        pacing_ms = ghostlog._env_int("GHOSTLOG_PACING_MS")
        if pacing_ms is not None:
            values["pacing"] = pacing_ms / 1000.0
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class ghostlog:
    import gzip
    import json
    import pathlib
    import re
    import secrets
    import shlex
    import time
    import typing
    import zlib
    import numpy as np

    @staticmethod
    def _env_int(name: str) -> "ghostlog.typing.Optional[int]":
        value = _os_module.getenv(name)
        if not value:
            return None
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            return None
        if parsed <= 0:
            return None
        return parsed

    ENGINE_VERSION = "8.1.0"
    ENVELOPE_SCHEMA = 1
    MAX_INPUT_BYTES = 2 * 1024 * 1024 * 1024
    FIELD_DELIM = b"\x1f\x1e"
    PART_SUFFIX_RE = re.compile(r"^(?P<base>.+)\.part(?P<index>\d{3})$")
    DUMP_HEX_RE = re.compile(r"(?:[0-9a-f]{2})*")
    MAX_PARTS = 999
    XOR_FAST_MIN = 64 * 1024
    DUMP_LINE_WIDTH = 64
    FRAGMENT_TYPE = "system_crash_fragment"
    DUMP_HEADER = "CRITICAL SYSTEM ERROR - CORE DUMP"
    DUMP_START = "HEX DUMP START"
    DUMP_END = "MEMORY REGION END"
    DUMP_FOOTER = "--- end of report: submit to vendor support ---"
    LOG_NAME_PREFIX = "crash_"
    _HEX_CHARS = frozenset("0123456789abcdefABCDEF")
    _SILENT_MODE: typing.ClassVar[bool] = False

    @staticmethod
    def _say(message: str, silent: bool = False) -> None:
        if silent or ghostlog._SILENT_MODE:
            return
        print(message)

    # ---------------------------------------------------------------- cipher
    # Repeating-key XOR. Every payload reuses the same key and there is no
    # tag, so identical inputs leak and tampering goes unnoticed.

    @staticmethod
    def _coerce_key(key: "ghostlog.typing.Union[str, bytes, bytearray]") -> bytes:
        if isinstance(key, str):
            raw = key.encode("utf-8")
        elif isinstance(key, (bytes, bytearray, memoryview)):
            raw = bytes(key)
        else:
            raise TypeError(f"Unsupported key type: {type(key)!r}")
        if not raw:
            raise ValueError("key must not be empty")
        return raw

    @staticmethod
    def xor_encode(data: bytes, key: "ghostlog.typing.Union[str, bytes]") -> bytes:
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeError("xor_encode expects bytes")
        key_bytes = ghostlog._coerce_key(key)
        n = len(data)
        if not n:
            return b""
        if n >= ghostlog.XOR_FAST_MIN:
            arr = ghostlog.np.frombuffer(bytes(data), dtype=ghostlog.np.uint8)
            stream = ghostlog.np.resize(
                ghostlog.np.frombuffer(key_bytes, dtype=ghostlog.np.uint8), n
            )
            return ghostlog.np.bitwise_xor(arr, stream).tobytes()
        klen = len(key_bytes)
        out = bytearray(data)
        for i in range(n):
            out[i] ^= key_bytes[i % klen]
        return bytes(out)

    @staticmethod
    def xor_decode(data: bytes, key: "ghostlog.typing.Union[str, bytes]") -> bytes:
        return ghostlog.xor_encode(data, key)

    # ------------------------------------------------------------ compressor

    @staticmethod
    def compress(data: bytes) -> bytes:
        return ghostlog.gzip.compress(bytes(data), mtime=0)

    @staticmethod
    def decompress(data: bytes) -> bytes:
        if not data:
            raise DecompressionError("empty compressed stream")
        try:
            return ghostlog.gzip.decompress(bytes(data))
        except (OSError, EOFError, ghostlog.zlib.error) as exc:
            raise DecompressionError(f"invalid compressed stream: {exc}") from exc

    # ----------------------------------------------------------- hex framing

    @staticmethod
    def hex_frame(data: bytes) -> str:
        return bytes(data).hex()

    @staticmethod
    def hex_unframe(text: str) -> bytes:
        compact = "".join(text.split())
        if len(compact) % 2:
            raise FormatError("hex text has odd length")
        if not ghostlog._HEX_CHARS.issuperset(compact):
            raise FormatError("hex text contains non-hex characters")
        return bytes.fromhex(compact)

    # -------------------------------------------------------------- envelope

    @staticmethod
    def _check_name(name: str) -> bytes:
        if not isinstance(name, str) or not name:
            raise ValueError("name must be a non-empty string")
        encoded = name.encode("utf-8")
        if ghostlog.FIELD_DELIM in encoded:
            raise ValueError("name contains the field delimiter")
        return encoded

    @staticmethod
    def build_envelope(
        name: str,
        payload: bytes,
        key: "ghostlog.typing.Union[str, bytes]",
        part_index: int = 1,
        total_parts: int = 1,
        *,
        compressed: bool = False,
        timestamp: "ghostlog.typing.Optional[int]" = None
    ) -> Envelope:
        if total_parts < 1 or not 1 <= part_index <= total_parts:
            raise ValueError(f"part {part_index} outside 1..{total_parts}")
        body = ghostlog._check_name(name) + ghostlog.FIELD_DELIM + bytes(payload)
        hex_text = ghostlog.hex_frame(ghostlog.xor_encode(body, key))
        if timestamp is None:
            timestamp = int(ghostlog.time.time() * 1000)
        return Envelope(
            hex_text=hex_text,
            part_index=part_index,
            total_parts=total_parts,
            compressed=compressed,
            metadata={"timestamp": timestamp},
        )

    @staticmethod
    def parse_envelope(
        envelope: Envelope,
        key: "ghostlog.typing.Union[str, bytes]"
    ) -> "ghostlog.typing.Tuple[str, bytes]":
        body = ghostlog.xor_decode(ghostlog.hex_unframe(envelope.hex_text), key)
        name_bytes, sep, payload = body.partition(ghostlog.FIELD_DELIM)
        if not sep:
            raise FormatError("field delimiter missing from envelope")
        try:
            name = name_bytes.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise FormatError("envelope name is not valid UTF-8") from exc
        return name, payload

    # -------------------------------------------------------------- carriers

    class Carrier:
        """Outer document shape an envelope is rendered as."""

        name = ""

        def embed(self, hex_text: str, metadata: "ghostlog.typing.Mapping[str, ghostlog.typing.Any]") -> str:
            raise NotImplementedError

        def extract(self, document: "ghostlog.typing.Union[str, bytes]") -> "ghostlog.typing.Tuple[str, dict]":
            raise NotImplementedError

        @staticmethod
        def _as_text(document: "ghostlog.typing.Union[str, bytes]") -> str:
            if isinstance(document, (bytes, bytearray)):
                try:
                    return bytes(document).decode("utf-8")
                except UnicodeDecodeError as exc:
                    raise FormatError("carrier document is not UTF-8 text") from exc
            return document

    class StructuredCarrier(Carrier):
        """JSON crash-fragment report holding the dump in ``memory_dump``."""

        name = "structured"

        def embed(self, hex_text, metadata):
            report = {
                "type": ghostlog.FRAGMENT_TYPE,
                "schema": ghostlog.ENVELOPE_SCHEMA,
                "part": int(metadata.get("part", 1)),
                "total_parts": int(metadata.get("total_parts", 1)),
                "timestamp": int(metadata.get("timestamp", ghostlog.time.time() * 1000)),
                "compressed": bool(metadata.get("compressed", False)),
                "memory_dump": hex_text,
            }
            return ghostlog.json.dumps(report)

        def extract(self, document):
            text = self._as_text(document)
            try:
                report = ghostlog.json.loads(text)
            except ValueError as exc:
                raise FormatError(f"crash report is not valid JSON: {exc}") from exc
            if not isinstance(report, dict):
                raise FormatError("crash report must be a JSON object")
            if report.get("type") != ghostlog.FRAGMENT_TYPE:
                raise FormatError(f"unexpected report type {report.get('type')!r}")
            schema = report.get("schema", 1)
            if not isinstance(schema, int) or schema > ghostlog.ENVELOPE_SCHEMA:
                raise FormatError(f"unsupported report schema {schema!r}")
            dump = report.get("memory_dump")
            if not isinstance(dump, str):
                raise FormatError("crash report has no memory_dump")
            if not ghostlog.DUMP_HEX_RE.fullmatch(dump):
                raise FormatError("memory_dump must be lowercase hex pairs")
            meta = {}
            for field_name in ("part", "total_parts", "timestamp"):
                value = report.get(field_name, 1 if field_name != "timestamp" else 0)
                if isinstance(value, bool) or not isinstance(value, int):
                    raise FormatError(f"crash report field {field_name!r} must be an integer")
                meta[field_name] = value
            compressed = report.get("compressed", False)
            if not isinstance(compressed, bool):
                raise FormatError("crash report field 'compressed' must be a boolean")
            meta["compressed"] = compressed
            return dump, meta

    class TextCarrier(Carrier):
        """Plain-text diagnostic log with the dump between fixed markers."""

        name = "text"

        def __init__(self, line_width: "ghostlog.typing.Optional[int]" = None):
            self.line_width = line_width or ghostlog.DUMP_LINE_WIDTH

        def embed(self, hex_text, metadata):
            lines = [ghostlog.DUMP_HEADER]
            for key, value in metadata.items():
                lines.append(f"{key}: {value}")
            lines.append(ghostlog.DUMP_START)
            width = self.line_width
            lines.extend(hex_text[i:i + width] for i in range(0, len(hex_text), width))
            lines.append(ghostlog.DUMP_END)
            lines.append(ghostlog.DUMP_FOOTER)
            return "\n".join(lines) + "\n"

        def extract(self, document):
            text = self._as_text(document).replace("\r\n", "\n")
            start_marker = ghostlog.DUMP_START + "\n"
            end_marker = "\n" + ghostlog.DUMP_END
            start = text.find(start_marker)
            if start < 0:
                raise FormatError("dump start marker missing")
            begin = start + len(start_marker)
            end = text.find(end_marker, begin - 1)
            if end < 0:
                raise FormatError("dump end marker missing")
            meta = {}
            for line in text[:start].splitlines()[1:]:
                label, sep, value = line.partition(": ")
                if sep:
                    meta[label.strip()] = value.strip()
            return text[begin:end].strip(), meta

    CARRIERS: typing.ClassVar[dict] = {}

    @staticmethod
    def carrier_for(carrier: "ghostlog.typing.Union[str, ghostlog.Carrier]") -> "ghostlog.Carrier":
        if isinstance(carrier, ghostlog.Carrier):
            return carrier
        try:
            return ghostlog.CARRIERS[str(carrier).lower()]()
        except KeyError:
            raise ValueError(
                f"Unknown carrier '{carrier}' (expected one of: {', '.join(sorted(ghostlog.CARRIERS))})"
            ) from None

    @staticmethod
    def render_envelope(envelope: Envelope, carrier="structured") -> str:
        impl = ghostlog.carrier_for(carrier)
        meta = dict(envelope.metadata)
        if impl.name == "text":
            meta.setdefault("Segment", f"{envelope.part_index}/{envelope.total_parts}")
            meta.setdefault("Compressed", "yes" if envelope.compressed else "no")
        else:
            meta.update(
                part=envelope.part_index,
                total_parts=envelope.total_parts,
                compressed=envelope.compressed,
            )
        return impl.embed(envelope.hex_text, meta)

    @staticmethod
    def open_document(document: "ghostlog.typing.Union[str, bytes]", carrier="structured") -> Envelope:
        impl = ghostlog.carrier_for(carrier)
        hex_text, meta = impl.extract(document)
        if impl.name == "text":
            part, total = 1, 1
            segment = meta.get("Segment")
            if segment:
                match = ghostlog.re.fullmatch(r"(\d+)/(\d+)", segment)
                if not match:
                    raise FormatError(f"malformed segment line {segment!r}")
                part, total = int(match.group(1)), int(match.group(2))
            compressed = meta.get("Compressed", "no").lower() == "yes"
        else:
            part, total = meta.pop("part"), meta.pop("total_parts")
            compressed = meta.pop("compressed")
        return Envelope(
            hex_text=hex_text,
            part_index=part,
            total_parts=total,
            compressed=compressed,
            metadata=meta,
        )

    # --------------------------------------------------- fragment/reassemble

    @staticmethod
    def fragment(payload: bytes, max_part_size: int) -> "ghostlog.typing.List[bytes]":
        if max_part_size <= 0:
            raise ValueError("max_part_size must be positive")
        data = bytes(payload)
        return [data[i:i + max_part_size] for i in range(0, len(data), max_part_size)]

    @staticmethod
    def part_name(name: str, part_index: int, total_parts: int) -> str:
        if total_parts <= 1:
            return name
        return f"{name}.part{part_index:03d}"

    @staticmethod
    def _split_part_name(name: str, total_parts: int) -> "ghostlog.typing.Tuple[str, ghostlog.typing.Optional[int]]":
        if total_parts <= 1:
            return name, None
        match = ghostlog.PART_SUFFIX_RE.match(name)
        if not match:
            return name, None
        return match.group("base"), int(match.group("index"))

    @staticmethod
    def reassemble(
        envelopes: "ghostlog.typing.Iterable[Envelope]",
        key: "ghostlog.typing.Union[str, bytes]"
    ) -> RawPayload:
        ordered = sorted(envelopes, key=lambda env: env.part_index)
        if not ordered:
            raise IncompleteSetError("no parts to reassemble")
        total = ordered[0].total_parts
        compressed = ordered[0].compressed
        indices = [env.part_index for env in ordered]
        if any(env.total_parts != total for env in ordered):
            raise IncompleteSetError("parts disagree on total_parts")
        if indices != list(range(1, total + 1)):
            missing = sorted(set(range(1, total + 1)) - set(indices))
            if missing:
                raise IncompleteSetError(f"missing part(s) {missing} of {total}")
            raise IncompleteSetError(f"unexpected part numbering {indices} for {total} parts")
        if any(env.compressed != compressed for env in ordered):
            raise IncompleteSetError("parts disagree on the compression flag")
        base_name = None
        chunks = []
        for env in ordered:
            name, payload = ghostlog.parse_envelope(env, key)
            base, suffix_index = ghostlog._split_part_name(name, total)
            if total > 1 and suffix_index != env.part_index:
                raise IncompleteSetError(
                    f"part {env.part_index} carries name {name!r} without a matching .part suffix"
                )
            if base_name is None:
                base_name = base
            elif base != base_name:
                raise IncompleteSetError(f"part {env.part_index} belongs to {base!r}, not {base_name!r}")
            chunks.append(payload)
        data = b"".join(chunks)
        if compressed:
            data = ghostlog.decompress(data)
        return RawPayload(name=base_name, data=data)

    # -------------------------------------------------------------- pipeline

    @staticmethod
    def encode_payload(
        name: str,
        data: bytes,
        config: CodecConfig,
        *,
        silent: bool = False
    ) -> "ghostlog.typing.List[Envelope]":
        ghostlog._check_name(name)
        body = ghostlog.compress(data) if config.compressed else bytes(data)
        slices = ghostlog.fragment(body, config.chunk_size) or [b""]
        total = len(slices)
        if total > ghostlog.MAX_PARTS:
            raise ValueError(
                f"{name}: {total} parts exceed the {ghostlog.MAX_PARTS}-part limit; raise chunk_size"
            )
        if total > 1:
            ghostlog._say(f"Fragmented mode: {total} parts", silent)
        timestamp = int(ghostlog.time.time() * 1000)
        return [
            ghostlog.build_envelope(
                ghostlog.part_name(name, index, total),
                chunk,
                config.key,
                index,
                total,
                compressed=config.compressed,
                timestamp=timestamp,
            )
            for index, chunk in enumerate(slices, start=1)
        ]

    @staticmethod
    def decode_documents(
        documents: "ghostlog.typing.Iterable[ghostlog.typing.Union[str, bytes]]",
        key: "ghostlog.typing.Union[str, bytes]",
        carrier="structured"
    ) -> RawPayload:
        impl = ghostlog.carrier_for(carrier)
        return ghostlog.reassemble([ghostlog.open_document(doc, impl) for doc in documents], key)

    @staticmethod
    def new_log_id() -> int:
        return 100000 + ghostlog.secrets.randbelow(900000)

    @staticmethod
    def log_name(log_id: int, part_index: int) -> str:
        return f"{ghostlog.LOG_NAME_PREFIX}{log_id}_p{part_index:03d}.log"

    # ---------------------------------------------------------------- files

    @staticmethod
    def _normalize_path(path_like) -> "ghostlog.pathlib.Path":
        return ghostlog.pathlib.Path(path_like).expanduser()

    @staticmethod
    def _read_input(path: "ghostlog.pathlib.Path") -> bytes:
        if not path.is_file():
            raise FileNotFoundError(f"Input file '{path}' not found")
        size = path.stat().st_size
        if size > ghostlog.MAX_INPUT_BYTES:
            raise ValueError(
                f"Input file '{path}' exceeds the {ghostlog.MAX_INPUT_BYTES} byte limit ({size} bytes)"
            )
        return path.read_bytes()

    @staticmethod
    def cloak_file(
        file,
        config: CodecConfig,
        output_dir=None,
        *,
        silent: bool = False
    ) -> "ghostlog.typing.List[str]":
        path = ghostlog._normalize_path(file)
        data = ghostlog._read_input(path)
        envelopes = ghostlog.encode_payload(path.name, data, config, silent=silent)
        target = ghostlog._normalize_path(output_dir) if output_dir else path.parent
        target.mkdir(parents=True, exist_ok=True)
        log_id = ghostlog.new_log_id()
        written = []
        for env in envelopes:
            out_path = target / ghostlog.log_name(log_id, env.part_index)
            out_path.write_text(ghostlog.render_envelope(env, config.carrier), encoding="utf-8", newline="\n")
            written.append(str(out_path))
        return written

    @staticmethod
    def uncloak_files(
        files,
        key: "ghostlog.typing.Union[str, bytes]",
        output=None,
        carrier="structured"
    ) -> str:
        paths = [ghostlog._normalize_path(f) for f in files]
        documents = [ghostlog._read_input(p) for p in paths]
        payload = ghostlog.decode_documents(documents, key, carrier)
        if output:
            out_path = ghostlog._normalize_path(output)
            if out_path.is_dir():
                out_path = out_path / ghostlog.pathlib.Path(payload.name).name
        else:
            out_path = paths[0].parent / ghostlog.pathlib.Path(payload.name).name
        out_path.write_bytes(payload.data)
        return str(out_path)

    # ------------------------------------------------- offline companion

    @staticmethod
    def recover_logs(
        documents: "ghostlog.typing.Mapping[str, ghostlog.typing.Union[str, bytes]]",
        key: "ghostlog.typing.Union[str, bytes]"
    ) -> "ghostlog.typing.Tuple[str, bytes]":
        """Rebuild a download from its text-carrier logs without the upload codec.

        Logs are joined in file-name order, so the ``.partNNN`` names handed
        out by the retrieval path line up by themselves. Every log restarts
        the key at offset 0, so each block is deciphered on its own.
        """
        if not documents:
            raise IncompleteSetError("no logs to recover")
        text_carrier = ghostlog.TextCarrier()
        names = sorted(documents)
        chunks = []
        for name in names:
            hex_text, _ = text_carrier.extract(documents[name])
            chunks.append(ghostlog.xor_decode(ghostlog.hex_unframe(hex_text), key))
        first = ghostlog.pathlib.PurePath(names[0]).name
        if first.startswith("system_log_"):
            first = first[len("system_log_"):]
        base = first.split(".part")[0]
        return f"RESTORED_{base}", b"".join(chunks)

    @staticmethod
    def companion_command(key: str) -> str:
        """Shell one-liner doing what `recover_logs` does, for hosts without ghostlog.

        Run it in the directory holding the ``system_*.log`` files.
        """
        start = ghostlog.DUMP_START + "\n"
        end = "\n" + ghostlog.DUMP_END
        code = (
            f"import sys; key = {key!r}.encode(); "
            "files = sorted(sys.argv[1:]); "
            f"dump = lambda f: bytes.fromhex(open(f).read().split({start!r})[1].split({end!r})[0]); "
            "o = b''.join(bytes(c ^ key[i % len(key)] for i, c in enumerate(dump(f))) for f in files); "
            "n = 'RESTORED_' + files[0].split('/')[-1].replace('system_log_', '').split('.part')[0]; "
            "open(n, 'wb').write(o); print('Restored ' + n)"
        )
        return f"python3 -c {ghostlog.shlex.quote(code)} system_*.log"


ghostlog.CARRIERS.update({
    ghostlog.StructuredCarrier.name: ghostlog.StructuredCarrier,
    ghostlog.TextCarrier.name: ghostlog.TextCarrier,
})


def cli(argv=None) -> int:
    import argparse

    from . import transport

    parser = argparse.ArgumentParser(prog="ghostlog", description="GHOSTLOG crash-report carrier toolkit")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_key(sub):
        sub.add_argument(
            "-k", "--key",
            default=_os_module.getenv("GHOSTLOG_KEY", ""),
            help="Shared cipher key (defaults to $GHOSTLOG_KEY)"
        )

    def add_store(sub):
        sub.add_argument(
            "--store",
            required=True,
            help="Directory path or http(s) base URL of the object store"
        )
        sub.add_argument(
            "--token",
            default=None,
            help="x-audit-token for HTTP stores (defaults to the key)"
        )

    def add_carrier(sub):
        sub.add_argument(
            "--carrier",
            default=None,
            help="Carrier shape: structured or text (defaults to $GHOSTLOG_CARRIER)"
        )

    cloak = subparsers.add_parser("cloak", help="Disguise files as crash-report logs")
    cloak.add_argument("paths", nargs="+", help="One or more file paths")
    add_key(cloak)
    cloak.add_argument("--no-compress", dest="compressed", action="store_false", help="Skip gzip before ciphering")
    cloak.add_argument("--chunk-size", type=int, default=None, help="Max bytes per part")
    add_carrier(cloak)
    cloak.add_argument("-o", "--output", default=None, help="Directory for the generated logs")
    cloak.set_defaults(compressed=None)

    uncloak = subparsers.add_parser("uncloak", help="Restore a file from its crash-report logs")
    uncloak.add_argument("paths", nargs="+", help="Every log of one payload")
    add_key(uncloak)
    add_carrier(uncloak)
    uncloak.add_argument("-o", "--output", default=None, help="Output file or directory")

    push = subparsers.add_parser("push", help="Cloak files and send each part to a store")
    push.add_argument("paths", nargs="+", help="One or more file paths")
    add_key(push)
    add_store(push)
    push.add_argument("--no-compress", dest="compressed", action="store_false", help="Skip gzip before ciphering")
    push.add_argument("--chunk-size", type=int, default=None, help="Max bytes per part")
    add_carrier(push)
    push.set_defaults(compressed=None)

    pull = subparsers.add_parser("pull", help="Fetch parts from a store and restore the file")
    pull.add_argument("locators", nargs="+", help="Every stored part of one payload")
    add_key(pull)
    add_store(pull)
    pull.add_argument("-o", "--output", default=".", help="Output file or directory")
    add_carrier(pull)

    disguise = subparsers.add_parser("disguise", help="Download a stored object wrapped as a diagnostic log")
    disguise.add_argument("locator", help="Stored object locator")
    add_key(disguise)
    add_store(disguise)
    disguise.add_argument("-o", "--output", default=".", help="Directory for the log")

    recover = subparsers.add_parser("recover", help="Offline recovery of disguised downloads")
    recover.add_argument("paths", nargs="+", help="Diagnostic logs produced by 'disguise'")
    add_key(recover)
    recover.add_argument("-o", "--output", default=".", help="Output directory")

    command = subparsers.add_parser("command", help="Print the offline recovery one-liner")
    add_key(command)

    args = parser.parse_args(argv)
    if not args.key:
        parser.error("a key is required (-k/--key or GHOSTLOG_KEY)")

    if args.command == "command":
        print(ghostlog.companion_command(args.key))
        return 0

    def connect(pacer=None):
        token = args.token
        if not token:
            token = args.key
            if args.store.startswith(("http://", "https://")):
                ghostlog._say("⚠️  No --token given; sending the cipher key as the x-audit-token")
        return transport.TransportAdapter(transport.open_store(args.store, token), pacer)

    try:
        config = CodecConfig.from_env(
            key=args.key,
            compressed=getattr(args, "compressed", None),
            chunk_size=getattr(args, "chunk_size", None),
            carrier=getattr(args, "carrier", None),
        )
    except ValueError as exc:
        parser.error(str(exc))

    results = {}
    adapter = None
    try:
        if args.command in ("cloak", "push"):
            if args.command == "push":
                adapter = connect(transport.Pacer(config.pacing))
            for raw_path in args.paths:
                try:
                    if adapter is None:
                        outputs = ghostlog.cloak_file(raw_path, config, args.output)
                    else:
                        path = ghostlog._normalize_path(raw_path)
                        outputs = adapter.upload(path.name, ghostlog._read_input(path), config)
                    results[str(raw_path)] = "SUCCESS! " + ", ".join(outputs)
                except (GhostlogError, OSError, ValueError) as exc:
                    results[str(raw_path)] = f"FAIL! {exc}"
        elif args.command == "uncloak":
            label = " ".join(args.paths)
            try:
                results[label] = "SUCCESS! " + ghostlog.uncloak_files(args.paths, args.key, args.output, config.carrier)
            except (GhostlogError, OSError, ValueError) as exc:
                results[label] = f"FAIL! {exc}"
        elif args.command == "pull":
            adapter = connect()
            label = " ".join(args.locators)
            try:
                payload = adapter.download(args.locators, args.key, config.carrier)
                out_path = ghostlog._normalize_path(args.output)
                if out_path.is_dir():
                    out_path = out_path / ghostlog.pathlib.Path(payload.name).name
                out_path.write_bytes(payload.data)
                results[label] = f"SUCCESS! {out_path}"
            except (GhostlogError, OSError, ValueError) as exc:
                results[label] = f"FAIL! {exc}"
        elif args.command == "disguise":
            adapter = connect()
            try:
                save_name, text = adapter.fetch_disguised(args.locator, args.key)
                out_path = ghostlog._normalize_path(args.output) / save_name
                out_path.write_text(text, encoding="utf-8", newline="\n")
                results[args.locator] = f"SUCCESS! {out_path}"
                print(ghostlog.companion_command(args.key))
            except (GhostlogError, OSError, ValueError) as exc:
                results[args.locator] = f"FAIL! {exc}"
        elif args.command == "recover":
            label = " ".join(args.paths)
            try:
                documents = {p: ghostlog._read_input(ghostlog._normalize_path(p)) for p in args.paths}
                name, data = ghostlog.recover_logs(documents, args.key)
                out_path = ghostlog._normalize_path(args.output) / name
                out_path.write_bytes(data)
                results[label] = f"SUCCESS! {out_path}"
            except (GhostlogError, OSError, ValueError) as exc:
                results[label] = f"FAIL! {exc}"
    finally:
        if adapter is not None:
            adapter.close()

    failures = 0
    for path, status in results.items():
        print(f"{path}: {status}")
        if not status.startswith("SUCCESS!"):
            failures += 1
    return 0 if failures == 0 else 1


def main(argv=None) -> int:
    return cli(argv)


__all__ = [
    "CodecConfig",
    "DecompressionError",
    "Envelope",
    "FormatError",
    "GhostlogError",
    "IncompleteSetError",
    "RawPayload",
    "TransportError",
    "cli",
    "ghostlog",
    "main",
]


if __name__ == "__main__":
    raise SystemExit(main())
