import collections
import datetime
import logging
import os
import shutil
import sys
import types
import pfc_names
import pm_image

# Converts a DocuMagix PaperMaster 98 cabinet into a normal file tree.
#
# Pass 1 reads every _PFC._PS under the source and builds one table from the
# 8 digit hex names (e.g. 000001A7) to the names a user gave them. Pass 2
# walks the leaves and writes them under those names. Pass 2 must only start
# once the table is complete.
#
# Leaves seen in a cabinet:
#   xxxxxxxx       TIFF/JPEG behind a vendor prefix
#   xxxxxxxx.TXT   OCR text of the image xxxxxxxx
#   NATIVE.<ext>   original file stored as is, named after its directory
#   I/<file>       images linked from a native .HTM
#   *.THM          thumbnails, redundant
#   ICONS/, AF_DATA/ not user data

METADATA_NAME = "_PFC._PS"
LOG_NAME = "log.txt"
SYSTEM_DRAWER = "___system_drawer_1___"
DEFAULT_LABEL = pm_image.DEFAULT_LABEL
SKIP_DIRS = ("ICONS", "AF_DATA")
HTML_IMAGE_DIR = "I"
NATIVE_PREFIX = "NATIVE"
THUMBNAIL_SUFFIX = ".THM"

LOG_BANNER = "------------- CONVERSION FROM PAPERMASTER FILESYSTEM LOG ---------------"

log = logging.getLogger(__name__)

def list_directories(root: str) -> list:
    dirs = []

    try:
        entries = sorted(os.scandir(root), key=lambda e: e.name)

    except OSError as e:
        log.error("cannot list %s: %s", root, e)
        return dirs

    for entry in entries:
        if entry.is_dir():
            dirs.append(entry.path)
            dirs.extend(list_directories(entry.path))

    return dirs

def list_files(root: str) -> list:
    files = []

    try:
        entries = sorted(os.scandir(root), key=lambda e: e.name)

    except OSError as e:
        log.error("cannot list %s: %s", root, e)
        return files

    for entry in entries:
        if entry.is_dir():
            files.extend(list_files(entry.path))

        else:
            files.append(entry.path)

    return files

def build_table(root: str, coding: str=None) -> types.MappingProxyType:
    table = {}

    for d in [root] + list_directories(root):
        path = os.path.join(d, METADATA_NAME)
        if not os.path.isfile(path): continue

        print(". ", end="", flush=True)

        try:
            pfc_names.decode_file(path, table, coding)

        except OSError as e:
            print(f"File Error {path}")
            log.error("File Error %s: %s", path, e)

    print()
    log.info("%d names collected", len(table))

    return types.MappingProxyType(table)

class Converter():
    def __init__(self, root: str, dest: str, table):
        self.root = os.path.abspath(root)
        self.dest = dest
        self.table = table
        self.stats = collections.Counter()

    def label(self, identifier: str) -> str:
        return self.table.get(identifier, DEFAULT_LABEL)

    def human_dirname(self, directory: str) -> str:
        path = self.dest
        relative = os.path.relpath(os.path.abspath(directory), self.root)
        if relative == os.curdir:
            return path

        for part in relative.split(os.sep):
            label = self.label(part)
            # skipping it promotes the Inbox one level
            if label == SYSTEM_DRAWER: continue
            path = os.path.join(path, label)

        return path

    def convert_file(self, path: str):
        parent, name = os.path.split(path)
        parent_name = os.path.basename(parent).upper()

        if parent_name.endswith(SKIP_DIRS):
            self.stats["skipped"] += 1

        elif "." not in name:
            if parent_name == HTML_IMAGE_DIR:
                self.stats["skipped"] += 1
            else:
                self.make_image(path)

        elif name.upper().startswith(NATIVE_PREFIX):
            self.copy_native(path)

        elif parent_name == HTML_IMAGE_DIR:
            self.copy_html_image(path)

        elif name.upper().endswith(THUMBNAIL_SUFFIX):
            self.stats["skipped"] += 1

    def make_image(self, path: str):
        directory, identifier = os.path.split(path)

        if not pfc_names.is_identifier(identifier):
            print(f"Warning : {identifier} in directory {directory} does not fit expected naming convention")
            log.warning("%s in directory %s does not fit expected naming convention", identifier, directory)

        target = self.human_dirname(directory)
        os.makedirs(target, exist_ok=True)

        log.info("Converting image from %s in %s", identifier, directory)
        result = pm_image.extract_file(path, self.table, target)

        if result is None:
            self.stats["no_magic"] += 1
            return

        self.stats["images"] += 1

        description = pm_image.describe_image(result.output)
        if description is not None:
            log.info("%s: %s", result.output, description)

    def copy_native(self, path: str):
        directory, name = os.path.split(path)
        extension = name[name.index("."):]

        target = self.human_dirname(directory)
        os.makedirs(target, exist_ok=True)

        output = os.path.join(target, self.label(os.path.basename(directory)) + extension)
        log.info("Found native %s, producing %s", path, output)
        shutil.copyfile(path, output)

        self.stats["natives"] += 1

    def copy_html_image(self, path: str):
        # "I" has no entry of its own, the page above it names the folder
        target = os.path.join(self.human_dirname(os.path.dirname(os.path.dirname(path))), HTML_IMAGE_DIR)
        os.makedirs(target, exist_ok=True)

        log.info("Copying HTM embedded image %s into %s", os.path.basename(path), target)
        shutil.copyfile(path, os.path.join(target, os.path.basename(path)))

        self.stats["html_images"] += 1

    def run(self) -> collections.Counter:
        for path in list_files(self.root):
            try:
                self.convert_file(path)

            except OSError as e:
                print(f"File Error {path}")
                log.error("File Error %s: %s", path, e)
                self.stats["errors"] += 1

        return self.stats

def open_log(dest: str) -> logging.Handler:
    handler = logging.FileHandler(os.path.join(dest, LOG_NAME), mode="w", encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(levelname)-8s %(message)s"))

    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(logging.INFO)

    handler.stream.write(f"{LOG_BANNER}\n\nStarted at {datetime.datetime.now()}\n\n")
    return handler

def close_log(handler: logging.Handler):
    logging.getLogger().removeHandler(handler)
    handler.close()

def convert(root: str, dest: str, coding: str=None) -> collections.Counter:
    os.makedirs(dest, exist_ok=True)
    handler = open_log(dest)

    try:
        print("Scanning directories for naming structure information")

        try:
            table = build_table(root, coding)

        except pfc_names.FormatViolation as e:
            log.critical("Unknown type - stopping: %s", e)
            raise

        print("Processing files")
        stats = Converter(root, dest, table).run()

        for k in sorted(stats):
            log.info("%-12s %d", k, stats[k])

    finally:
        close_log(handler)

    return stats

def main(argv: list=None) -> int:
    args = sys.argv[1:] if argv is None else list(argv)
    assume_yes = "--yes" in args
    args = [a for a in args if a != "--yes"]

    print("PM Convert : method of converting old PaperMaster file cabinets")
    print("to normal filesystem records.")
    print()

    if len(args) not in (2, 3):
        print("usage: pmconvert source destination [encoding] [--yes]")
        print("source should be the 'Default' directory of the cabinet (or any lower,")
        print(f"for a partial tree) and must contain a {METADATA_NAME} file")
        return 2

    source, dest = args[:2]
    coding = args[2] if len(args) == 3 else None

    if not os.path.isfile(os.path.join(source, METADATA_NAME)):
        print(f"Start directory does not contain {METADATA_NAME} file.  Aborting.")
        return 1

    if not assume_yes:
        print(f"Converting from <{source}> to <{dest}> WHICH WILL BE OVERWRITTEN")
        print("Type OK to proceed, or Q to exit")

        if input().strip().upper() != "OK":
            print("Aborting")
            return 1

    try:
        stats = convert(source, dest, coding)

    except pfc_names.FormatViolation as e:
        print("Unknown type - stopping")
        print(e)
        return 1

    print(f"Images Converted   = {stats['images']}")
    print()
    print(f"All done.  Inspect {LOG_NAME} in {dest} for summary")
    return 0

if __name__ == "__main__":
    sys.exit(main())
