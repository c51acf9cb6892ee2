import collections
import logging
import os
import shutil
import sys
import typing
import hexdump
from PIL import Image

# Extension-less leaves of a cabinet are TIFF or JPEG files behind a vendor
# prefix of no fixed length (usually "DMFILE    " for TIFF). The prefix is
# never decoded, everything before the first image marker is dropped.

TIFF_MAGIC = b"II*"
JPEG_MAGIC = b"\xff\xd8"

# checked in this order at every byte
MAGICS = (
    (TIFF_MAGIC, "tiff"),
    (JPEG_MAGIC, "jpg"),
)

DEFAULT_LABEL = "Default"
OCR_DIR = "OCR"
SIDECAR_SUFFIXES = (".txt", ".TXT")

log = logging.getLogger(__name__)

ExtractionResult = collections.namedtuple("ExtractionResult", "extension offset output ocr_source ocr_destination ocr_copied")

def locate_payload(blob: typing.Union[bytes, bytearray]) -> typing.Optional[typing.Tuple[str, int]]:
    window = collections.deque(maxlen=max(len(m) for m, _ in MAGICS))

    for offset, c in enumerate(blob):
        window.append(c)
        tail = bytes(window)

        for magic, extension in MAGICS:
            if tail.endswith(magic):
                return extension, offset - len(magic) + 1

    return None

def label_for(identifier: str, table) -> str:
    label = table.get(identifier)
    if label is None:
        log.warning("no name recorded for %s, using %s", identifier, DEFAULT_LABEL)
        return DEFAULT_LABEL

    return label

def find_sidecar(source_dir: str, identifier: str) -> typing.Optional[str]:
    for suffix in SIDECAR_SUFFIXES:
        path = os.path.join(source_dir, identifier + suffix)
        if os.path.isfile(path):
            return path

    return None

def copy_sidecar(source: str, destination: str) -> bool:
    log.info("Copying associated OCR text file %s", source)

    try:
        shutil.copyfile(source, destination)

    except OSError as e:
        log.error("Error copying file %s: %s", source, e)
        return False

    return True

def extract(blob, identifier: str, table, source_dir: str, dest_dir: str) -> typing.Optional[ExtractionResult]:
    found = locate_payload(blob)
    if found is None:
        return None

    extension, offset = found
    name = label_for(identifier, table)
    output = os.path.join(dest_dir, f"{name}.{extension}")

    log.info("producing %s.%s in %s (dropped %d prefix bytes)", name, extension, dest_dir, offset)
    with open(output, "wb") as f:
        f.write(blob[offset:])

    # TIFF text goes one level down in OCR/, JPEG text sits beside the image
    if extension == "tiff":
        ocr_dir = os.path.join(dest_dir, OCR_DIR)
        os.makedirs(ocr_dir, exist_ok=True)
        ocr_destination = os.path.join(ocr_dir, name + ".txt")

    else:
        ocr_destination = os.path.join(dest_dir, name + ".txt")

    ocr_source = find_sidecar(source_dir, identifier)
    ocr_copied = False

    if ocr_source is not None:
        ocr_copied = copy_sidecar(ocr_source, ocr_destination)

    else:
        ocr_source = os.path.join(source_dir, identifier + SIDECAR_SUFFIXES[0])

    return ExtractionResult(extension, offset, output, ocr_source, ocr_destination, ocr_copied)

def extract_file(path: str, table, dest_dir: str) -> typing.Optional[ExtractionResult]:
    source_dir, identifier = os.path.split(path)

    with open(path, "rb") as f:
        blob = f.read()

    result = extract(blob, identifier, table, source_dir, dest_dir)

    if result is None:
        log.warning("no TIFF or JPEG marker in %s, skipped", path)
        log.debug("first bytes of %s\n%s", path, hexdump.hexdump(blob[:64], result="return"))

    return result

def describe_image(path: str) -> typing.Optional[str]:
    try:
        with Image.open(path) as im:
            return f"{im.format} {im.width}x{im.height} {im.mode}"

    except Exception as e:
        # Pillow raises all sorts on a truncated payload, the file is kept as is
        log.warning("%s does not open as an image: %s: %s", path, type(e).__name__, e)
        return None

if __name__ == "__main__":
    if len(sys.argv) != 3:
        print(f"usage: {sys.argv[0]} blob destination")
        sys.exit(2)

    identifier = os.path.basename(sys.argv[1])
    os.makedirs(sys.argv[2], exist_ok=True)

    result = extract_file(sys.argv[1], {identifier: identifier}, sys.argv[2])
    if result is None:
        print("no image marker found")
        sys.exit(1)

    print(result.output, describe_image(result.output))
