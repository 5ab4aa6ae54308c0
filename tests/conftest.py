"""Shared test fixtures for icarus_rag testing."""

import json
import pytest
import tempfile
import shutil
import struct
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional, Tuple
import sys

# Add parent directory to path so we can import icarus_rag
sys.path.insert(0, str(Path(__file__).parent.parent))

import icarus_rag


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def sample_docs_dir(temp_dir: Path) -> Path:
    """Create a temporary docs directory with sample files."""
    docs_dir = temp_dir / "docs"
    docs_dir.mkdir()
    return docs_dir


@pytest.fixture
def sample_notes_content() -> str:
    """Deployment notes used by the retrieval scenarios."""
    return """Release notes for the platform team, kept up to date after every rollout.

We use blue green deploys behind the load balancer so traffic can be switched back quickly.

Database migrations run before the new version receives any production traffic at all.
"""


@pytest.fixture
def sample_txt_content() -> str:
    """Sample text content for testing."""
    return """This is a plain text document used to exercise the indexing pipeline.

It contains multiple paragraphs with technical terms like API, machine learning,
user interface, and configuration settings.

The final paragraph talks about testing strategies and documentation practices.
"""


@pytest.fixture
def sample_documents(sample_docs_dir: Path, sample_notes_content: str, sample_txt_content: str) -> Path:
    """Create sample documents for testing."""
    (sample_docs_dir / "notes.txt").write_text(sample_notes_content, encoding="utf-8")
    (sample_docs_dir / "guide.md").write_text(
        "# Guide\n\n" + sample_txt_content, encoding="utf-8"
    )
    nested = sample_docs_dir / "team"
    nested.mkdir()
    (nested / "handbook.txt").write_text(
        "The on-call handbook explains how incidents are escalated between the teams.\n",
        encoding="utf-8",
    )
    # Not a supported format, must be ignored by the scanner
    (sample_docs_dir / "image.png").write_bytes(b"\x89PNG\r\n\x1a\n")
    return sample_docs_dir


@pytest.fixture
def sample_config(temp_dir: Path) -> Dict[str, Any]:
    """Default configuration with test-friendly timings."""
    config = icarus_rag.load_config(str(temp_dir / "absent.yaml"))
    config["storage"]["data_dir"] = str(temp_dir / "data")
    config["indexing"]["debounce_seconds"] = 0.01
    config["indexing"]["startup_delay_seconds"] = 0
    return config


class FixedClock:
    """Injectable millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


class EventRecorder:
    """Event sink that remembers everything emitted."""

    def __init__(self):
        self.events: List[tuple] = []

    def __call__(self, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((event, payload))

    def named(self, event: str) -> List[Dict[str, Any]]:
        return [payload for name, payload in self.events if name == event]


@pytest.fixture
def events() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def store(temp_dir: Path) -> icarus_rag.ChunkStore:
    return icarus_rag.ChunkStore(temp_dir / "data" / "rag-database.json", quiet=True)


@pytest.fixture
def index_settings(sample_docs_dir: Path) -> icarus_rag.IndexSettings:
    return icarus_rag.IndexSettings(directories=[str(sample_docs_dir)], enabled=True)


@pytest.fixture
def registry() -> icarus_rag.ExtractorRegistry:
    return icarus_rag.ExtractorRegistry.with_default_formats(quiet=True)


@pytest.fixture
def scheduler(store, index_settings, registry, sample_config, events, clock) -> Generator[icarus_rag.IndexingScheduler, None, None]:
    """Scheduler over the sample docs directory with a fixed clock."""
    instance = icarus_rag.IndexingScheduler(
        store, index_settings, registry,
        config=sample_config, emit=events, clock=clock, quiet=True,
    )
    yield instance
    instance.stop()


def build_pdf(text: str, startxref_shift: int = 0) -> bytes:
    """Build a minimal single-page PDF showing ``text`` in Helvetica.

    A non-zero ``startxref_shift`` points the trailer past the real xref table,
    which PyPDF2 repairs with a warning.
    """
    stream = f"BT /F1 12 Tf 72 720 Td ({text}) Tj ET".encode("latin-1")
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] /Contents 4 0 R "
        b"/Resources << /Font << /F1 5 0 R >> >> >>",
        b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, 1):
        offsets.append(len(out))
        out += b"%d 0 obj\n" % number + body + b"\nendobj\n"
    xref_offset = len(out)
    out += b"xref\n0 %d\n" % (len(objects) + 1)
    out += b"0000000000 65535 f \n"
    for offset in offsets:
        out += b"%010d 00000 n \n" % offset
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (
        len(objects) + 1, xref_offset + startxref_shift,
    )
    return bytes(out)


@pytest.fixture
def pdf_factory() -> Callable[..., Path]:
    """Write a small text PDF to the given path."""
    def _write(path: Path, text: str, startxref_shift: int = 0) -> Path:
        path.write_bytes(build_pdf(text, startxref_shift))
        return path
    return _write


OLE_SECTOR_SIZE = 512
OLE_MINI_STREAM_CUTOFF = 4096
OLE_FREESECT = 0xFFFFFFFF
OLE_ENDOFCHAIN = 0xFFFFFFFE
OLE_FATSECT = 0xFFFFFFFD
OLE_NOSTREAM = 0xFFFFFFFF


def _ole_dir_entry(name: str, kind: int, start: int = 0, size: int = 0,
                   right: int = OLE_NOSTREAM, child: int = OLE_NOSTREAM) -> bytes:
    encoded = name.encode("utf-16-le") + b"\0\0" if name else b""
    return struct.pack(
        "<64sHBBIII16sIQQIQ",
        encoded, len(encoded), kind, 1, OLE_NOSTREAM, right, child, b"", 0, 0, 0, start, size,
    )


def build_compound_file(streams: Dict[str, bytes]) -> bytes:
    """Pack streams into a version 3 OLE compound file with one FAT sector.

    Streams are padded to the mini stream cutoff so all of them live in
    regular sectors, and siblings are chained in directory sort order.
    """
    fat = [OLE_FATSECT]
    data = bytearray()
    entries = []
    ordered = sorted(streams.items(), key=lambda item: (len(item[0]), item[0].upper()))
    for name, payload in ordered:
        payload = payload.ljust(OLE_MINI_STREAM_CUTOFF, b"\0")
        start = len(fat)
        count = -(-len(payload) // OLE_SECTOR_SIZE)
        fat.extend(range(start + 1, start + count))
        fat.append(OLE_ENDOFCHAIN)
        data += payload.ljust(count * OLE_SECTOR_SIZE, b"\0")
        entries.append((name, start, len(payload)))

    directory = _ole_dir_entry("Root Entry", 5, OLE_ENDOFCHAIN, 0, child=1)
    for sid, (name, start, size) in enumerate(entries, 1):
        right = sid + 1 if sid < len(entries) else OLE_NOSTREAM
        directory += _ole_dir_entry(name, 2, start, size, right=right)
    directory = directory.ljust(-(-len(directory) // OLE_SECTOR_SIZE) * OLE_SECTOR_SIZE, b"\0")
    dir_start = len(fat)
    dir_count = len(directory) // OLE_SECTOR_SIZE
    fat.extend(range(dir_start + 1, dir_start + dir_count))
    fat.append(OLE_ENDOFCHAIN)
    assert len(fat) <= OLE_SECTOR_SIZE // 4
    fat.extend([OLE_FREESECT] * (OLE_SECTOR_SIZE // 4 - len(fat)))

    header = struct.pack(
        "<8s16sHHHHH6s9I",
        b"\xD0\xCF\x11\xE0\xA1\xB1\x1A\xE1", b"", 0x3E, 3, 0xFFFE, 9, 6, b"",
        0, 1, dir_start, 0, OLE_MINI_STREAM_CUTOFF, OLE_ENDOFCHAIN, 0, OLE_ENDOFCHAIN, 0,
    )
    header += struct.pack("<109I", 0, *([OLE_FREESECT] * 108))
    return header + struct.pack(f"<{len(fat)}I", *fat) + bytes(data) + directory


def build_word_document(pieces: List[Tuple[str, bool]], flags: int = 0x0200) -> bytes:
    """Build a Word 97 .doc whose main text is split over ``pieces``.

    Each piece is ``(text, compressed)``; compressed pieces are stored as
    cp1252 bytes, the others as UTF-16LE. The CLX opens with one property
    modifier ahead of the piece table.
    """
    word = bytearray(0x800)
    struct.pack_into("<H", word, 0, 0xA5EC)
    struct.pack_into("<H", word, 0x0A, flags)
    cps = [0]
    descriptors = b""
    for text, compressed in pieces:
        offset = len(word)
        if compressed:
            word += text.encode("cp1252")
            fc = (offset * 2) | 0x40000000
        else:
            word += text.encode("utf-16-le")
            fc = offset
        cps.append(cps[-1] + len(text))
        descriptors += struct.pack("<HIH", 0, fc, 0)
    struct.pack_into("<I", word, 0x4C, cps[-1])

    plc = struct.pack(f"<{len(cps)}I", *cps) + descriptors
    clx = b"\x01" + struct.pack("<H", 2) + b"\x00\x00" + b"\x02" + struct.pack("<I", len(plc)) + plc
    struct.pack_into("<II", word, 0x01A2, 0, len(clx))
    table = "1Table" if flags & 0x0200 else "0Table"
    return build_compound_file({"WordDocument": bytes(word), table: clx})


@pytest.fixture
def doc_factory() -> Callable[..., Path]:
    """Write a Word 97 document built from text pieces to the given path."""
    def _write(path: Path, pieces: List[Tuple[str, bool]], flags: int = 0x0200) -> Path:
        path.write_bytes(build_word_document(pieces, flags))
        return path
    return _write


class FakeStreamResponse:
    """Stand-in for a streamed requests.Response."""

    def __init__(self, lines: Optional[List[Any]] = None, status_code: int = 200, payload: Any = None):
        self.lines = [
            line if isinstance(line, bytes) else json.dumps(line).encode("utf-8")
            for line in (lines or [])
        ]
        self.status_code = status_code
        self.payload = payload
        self.closed = False

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def iter_lines(self):
        return iter(self.lines)

    def json(self) -> Any:
        if self.payload is None:
            raise ValueError("no JSON body")
        return self.payload

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_response() -> Callable[..., FakeStreamResponse]:
    """Factory for fake streaming HTTP responses."""
    return FakeStreamResponse
