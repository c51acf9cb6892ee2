from construct import *
import collections
import logging
import sys
import typing
import hexdump

# Decoder for the "_PFC._PS" sidecar found at every level of a PaperMaster 98
# cabinet. Layout inferred from sample cabinets, not from documentation.
#
# After a "NAME" marker (32 byte aligned) the file is a run of records:
#   <8 ascii hex id> .. 00 00 LEN 00 <name bytes> 00     (drawer/folder/document)
#   24 x 00, 02 00 18 00, then 32 byte page sub-records   (page order table)

CODING = "latin-1"

HEX_DIGITS = "0123456789ABCDEF"
SANITIZE_CHARS = '><:/\\|?"*.'

WINDOW_SIZE = 28
PAGE_TABLE_HEADER = b"\x00" * 24 + b"\x02\x00\x18\x00"

RECORD_PAGE = 0x20
RECORD_ANNOTATION = 0x25

log = logging.getLogger(__name__)

sync_chunk_data = Struct(
    "magic" / Const(b"NAME"),
)
SYNC_CHUNK_SIZE = 32

page_record_data = Struct(
    Padding(1),
    "position_lo" / Hex(Int8ul),
    "position_hi" / Hex(Int8ul),
    # A0 00, C0 00, E0 00, 00 01, 20 01 ... reference only, page_order is authoritative
    "position" / Computed(this.position_lo // 32 + this.position_hi * 8 - 5),
    Padding(4),
    "identifier" / Bytes(8),
    Padding(10),
    "page_order" / Bytes(5),
    Padding(1),
)

annotation_data = Struct(
    "data" / Bytes(36),
)

NameRecord = collections.namedtuple("NameRecord", "identifier label")
PageRecord = collections.namedtuple("PageRecord", "identifier page_order position")
AnnotationRecord = collections.namedtuple("AnnotationRecord", "offset data")

class FormatViolation(Exception):
    """Raised when a metadata stream holds a record type the decoder does not know.

    Any label harvested so far may be misplaced relative to the unparsed data,
    so callers are expected to stop the whole conversion.
    """

    def __init__(self, message: str, tag: int=None, offset: int=None, context: bytes=b""):
        super().__init__(message)
        self.tag = tag
        self.offset = offset
        self.context = context

    def __str__(self):
        text = super().__str__()
        if self.context:
            text += "\n" + hexdump.hexdump(self.context, result="return")

        return text

def is_identifier(text: str) -> bool:
    return len(text) == 8 and all(c in HEX_DIGITS for c in text)

def sanitize(name: str) -> str:
    # Windows reserved characters, plus '.' which misbehaves when repeated
    for c in SANITIZE_CHARS:
        name = name.replace(c, "_")

    return name

def page_label(page_order: int) -> str:
    return f"Page{page_order + 1:05d}"

def match_name_run(buffer: typing.Union[bytes, bytearray]) -> typing.Optional[bytes]:
    """Test the bytes seen so far, just before a terminating 00, for a name.

    Accepts ``00 00 LEN 00 <run>`` where ``run`` is the trailing run of non-zero
    bytes and LEN is len(run)+2 or len(run)+3. The slack is not understood.
    A miss promotes the entry one level in the output tree and a false hit
    inserts an extra directory level; neither loses data.
    """
    start = len(buffer)
    while start > 0 and buffer[start - 1] != 0:
        start -= 1

    run = bytes(buffer[start:])
    zero = start - 1

    if len(run) == 0 or zero < 3:
        return None

    stated = buffer[zero - 1]
    if buffer[zero - 2] != 0 or buffer[zero - 3] != 0:
        return None

    if stated not in (len(run) + 2, len(run) + 3):
        return None

    return run

class PFCDecoder():
    def __init__(self, file, coding: str=None):
        self.file = file
        self.coding = coding or CODING
        self.window = collections.deque(maxlen=WINDOW_SIZE)

    def sync(self):
        while True:
            try:
                sync_chunk_data.parse_stream(self.file)
                return

            except ConstError:
                self.file.read(SYNC_CHUNK_SIZE - 4)

    def records(self):
        self.sync()

        while True:
            c = self.file.read(1)
            if len(c) <= 0: return

            self.window.append(c[0])
            if len(self.window) < 8: continue

            tail = bytes(self.window)
            candidate = tail[-8:].decode("latin-1")

            if is_identifier(candidate):
                yield self.read_name(candidate)

            elif tail == PAGE_TABLE_HEADER:
                # page tables run to the end of the file
                yield from self.read_pages()
                return

    def read_name(self, identifier: str) -> NameRecord:
        buffer = bytearray()

        while True:
            c = self.file.read(1)
            if len(c) <= 0: raise StreamError(f"no name found for {identifier}")

            self.window.append(c[0])

            if c[0] == 0:
                run = match_name_run(buffer)
                if run is not None:
                    return NameRecord(identifier, sanitize(run.decode(self.coding, errors="replace")))

                buffer.append(0)
                # only the 3 bytes before the newest 00 can prefix a later run
                del buffer[:-4]

            else:
                buffer.append(c[0])

    def read_pages(self):
        while True:
            offset = self.file.tell()
            tag = self.file.read(1)
            if len(tag) <= 0: return

            if tag[0] == RECORD_PAGE:
                t = page_record_data.parse_stream(self.file)

                if not t.page_order.isdigit():
                    raise FormatViolation(f"page order {t.page_order!r} is not decimal", tag[0], offset, tag + t.identifier + t.page_order)

                yield PageRecord(t.identifier.decode("latin-1"), int(t.page_order), t.position)

            elif tag[0] == RECORD_ANNOTATION:
                # only ever seen once, meaning unknown
                t = annotation_data.parse_stream(self.file)
                yield AnnotationRecord(offset, t.data)

            else:
                raise FormatViolation(f"unknown record type 0x{tag[0]:02x} at 0x{offset:x}", tag[0], offset, tag + self.file.read(31))

def decode(stream, coding: str=None) -> dict:
    table = {}

    try:
        for r in PFCDecoder(stream, coding).records():
            if isinstance(r, NameRecord):
                table[r.identifier] = r.label
                log.info("%s is %s", r.identifier, r.label)

            elif isinstance(r, PageRecord):
                table[r.identifier] = page_label(r.page_order)
                log.info("%s is page %05d (position %d)", r.identifier, r.page_order + 1, r.position)

            else:
                log.debug("annotation at 0x%x ignored\n%s", r.offset, hexdump.hexdump(r.data, result="return"))

    except StreamError as e:
        log.warning("metadata ended early, kept %d entries: %s", len(table), e)

    return table

def decode_file(path: str, table: dict=None, coding: str=None) -> dict:
    log.info("Getting name information from %s", path)

    with open(path, "rb") as f:
        fragment = decode(f, coding)

    if table is None:
        return fragment

    table.update(fragment)
    return table

if __name__ == "__main__":
    if len(sys.argv) > 2:
        CODING = sys.argv[2]

    try:
        for k, v in decode_file(sys.argv[1]).items():
            print(k, v)

    except FormatViolation as e:
        print(f"error: {e}")
        sys.exit(1)
