"""
Gzip-compressed files addressed by path
The contents are always rewritten whole: gzip offers no random access, so
appending to or patching a file means decompress, modify, recompress.
"""

__version_bytes__ = bytes([0, 4])
__version__ = f"{'.'.join(str(int(b)) for b in __version_bytes__)}"

from builtins import open as _builtin_open
import collections
import gzip
import io
import logging
import os
import pathlib
import zlib

from config import SingletonConfig

config = SingletonConfig()

_COMPRESSLEVEL = zlib.Z_DEFAULT_COMPRESSION
LARGE_CONTENT_WARNING = 64 * 1024 * 1024  # uncompressed bytes


class CompressedFile:

    """A handle on a gzip-compressed file.

    The handle holds nothing but the path. Each operation opens its own
    file object and is done with it before returning, except the open_*
    methods, which hand the open stream to the caller.

    Files written through a CompressedFile always hold a single gzip
    member at the default compression level. Files read through it may
    be any valid gzip stream, including the concatenation of several
    members.

    There is no locking: two writers on the same path race, and the last
    one to finish wins.
    """

    def __init__(self, path):
        """Bind a handle to path without touching the filesystem."""
        if not isinstance(path, (str, bytes, os.PathLike)):
            raise TypeError("path must be a str, bytes or PathLike object")
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        self.path = pathlib.Path(path)

    @classmethod
    def create(cls, path):
        """Create (or truncate) the file at path and return a handle on it.

        The file is left empty, which reads back as empty content.
        Raises OSError if the file cannot be created.
        """
        logging.debug(f"CompressedFile.create({path=})")
        handle = cls(path)
        with _builtin_open(handle.path, "wb"):
            pass
        return handle

    create_file = create

    def __fspath__(self):
        return os.fspath(self.path)

    def __repr__(self):
        return f"{type(self).__name__}({str(self.path)!r})"

    def __eq__(self, other):
        if not isinstance(other, CompressedFile):
            return NotImplemented
        return self.path == other.path

    def __hash__(self):
        return hash(self.path)

    def exists(self):
        return self.path.exists()

    def open_for_read(self):
        """Open the file for reading, decompressing on the fly.

        Returns a binary file object. Raises FileNotFoundError if there is
        no such file. Content that is not gzip is only detected once
        reading starts, as gzip.BadGzipFile.
        """
        logging.debug(f"CompressedFile.open_for_read({self.path=})")
        return gzip.GzipFile(self.path, "rb")

    def open_for_write(self, append=False):
        """Open the file for writing, compressing on the fly.

        The file is created if need be. With append false it is truncated
        and the returned gzip stream is written straight to disk; the gzip
        footer is written when the stream is closed.

        With append true the written bytes are held in memory until the
        stream is closed, and are then added with append_to_file(), so the
        file still holds one gzip member. The file is created, and any
        error opening it raised, before the writer is returned.
        """
        logging.debug(f"CompressedFile.open_for_write({self.path=}, {append=})")
        if append:
            with _builtin_open(self.path, "ab"):
                pass
            return _AppendWriter(self)
        return gzip.GzipFile(self.path, "wb", compresslevel=_COMPRESSLEVEL)

    def read_bytes(self):
        """Return the whole decompressed content of the file."""
        with self.open_for_read() as f:
            return f.read()

    def write_bytes(self, data):
        """Replace the content of the file with data.

        Returns the number of uncompressed bytes written.
        """
        data = _as_bytes(data)
        logging.debug(f"CompressedFile.write_bytes({self.path=}, {len(data)=})")
        _rewrite_path(self.path, data)
        return len(data)

    def append_to_file(self, data):
        """Add data at the end of the decompressed content.

        The existing content (empty if the file does not exist) is read in
        full, data is added to it, and the file is rewritten as a single
        gzip member. Each call costs time and memory in proportion to the
        total content, so this does not suit large files or frequent
        appends.
        """
        data = _as_bytes(data)
        logging.debug(f"CompressedFile.append_to_file({self.path=}, {len(data)=})")
        try:
            existing = self.read_bytes()
        except FileNotFoundError:
            existing = b""
        _rewrite_path(self.path, existing + data)

    def patch(self, value, pos):
        """Overwrite the content at byte offset pos with value.

        See patch_at_offset(). Raises FileNotFoundError if the file does
        not exist.
        """
        with _builtin_open(self.path, "r+b") as f:
            patch_at_offset(value, f, pos)


class _AppendWriter(io.BytesIO):
    """Collects bytes in memory and appends them to a CompressedFile on close."""

    def __init__(self, handle):
        super().__init__()
        self.handle = handle
        self.name = str(handle.path)

    def close(self):
        if self.closed:
            return
        try:
            self.handle.append_to_file(self.getvalue())
        finally:
            super().close()


def patch_at_offset(value, file, pos):
    """Write value at byte offset pos of the content of a gzip file.

    file must be a binary file object open for both reading and writing,
    e.g. open(name, "r+b"). An empty file counts as empty content. If the
    content is shorter than pos + len(value), it is first extended with
    zero bytes. The whole content is then recompressed over the file,
    which is truncated after the new gzip footer. file is left open.

    A str value is encoded as UTF-8.

    Nothing is written in place and there is no temporary file, so a
    failure while rewriting can leave the file corrupt.
    """
    if isinstance(value, str):
        value = value.encode("utf-8")
    else:
        value = _as_bytes(value)
    if not isinstance(pos, int):
        if not hasattr(pos, "__index__"):
            raise TypeError("Integer argument expected")
        pos = pos.__index__()
    if pos < 0:
        raise ValueError(f"Negative offset: {pos}")
    logging.debug(f"patch_at_offset({len(value)=}, {file=}, {pos=})")

    content = bytearray()
    if file.seek(0, io.SEEK_END) > 0:
        file.seek(0)
        content += decompress(file.read())

    end = pos + len(value)
    if end > len(content):
        content.extend(bytes(end - len(content)))
    content[pos:end] = value

    file.seek(0)
    _rewrite_file(file, bytes(content))


def write_string_file_gz(value, file, pos):
    return patch_at_offset(value, file, pos)


def compress(data):
    """Compress a block of data into a single gzip member."""
    return gzip.compress(_as_bytes(data), compresslevel=_COMPRESSLEVEL)


def decompress(data):
    """Decompress a block of gzip data.

    Concatenated members are decompressed in turn and joined. Empty input
    gives empty output.
    """
    if not data:
        return b""
    return gzip.decompress(data)


def _as_bytes(data):
    if isinstance(data, bytes):
        return data
    if isinstance(data, str):
        raise TypeError("data must be bytes-like, not str")
    # accept any data that supports the buffer protocol
    return memoryview(data).tobytes()


def _rewrite_path(path, content):
    compressed = _compress_for_rewrite(content, path)
    with _builtin_open(path, "w+b") as f:
        _write_compressed(f, content, compressed)


def _rewrite_file(f, content):
    """Write content as one gzip member at f's position, then cut f there."""
    compressed = _compress_for_rewrite(content, getattr(f, "name", f))
    _write_compressed(f, content, compressed)


def _compress_for_rewrite(content, name):
    if len(content) > LARGE_CONTENT_WARNING:
        logging.warning(
            f"Rewriting {len(content)} bytes of content to {name}; "
            "whole-file rewrites do not scale"
        )
    return compress(content)


def _write_compressed(f, content, compressed):
    # Nothing in f is touched before compressed is ready
    start = f.tell()
    f.write(compressed)
    f.truncate()
    f.flush()
    logging.debug(f"rewrote {getattr(f, 'name', f)}: {len(content)=} {len(compressed)=}")

    if "verify" in config.debug:
        f.seek(start)
        if decompress(f.read()) != content:
            raise OSError(f"Verification failed after rewriting {getattr(f, 'name', f)}")
    if "mem" in config.debug:
        m = mem_used()
        logging.debug(f"after rewrite: {m.rss=} {m.vms=} {m.total_rss=} {m.total_vms=} {m.children=}")


################################################################
# Debugging aids

MemoryUsage = collections.namedtuple("MemoryUsage", "rss vms total_rss total_vms children")


def mem_used():
    """Memory held by this process, and by it plus its children, in bytes."""
    import psutil

    process = psutil.Process(os.getpid())
    own = process.memory_info()
    children = process.children(recursive=True)
    child_infos = [c.memory_info() for c in children]
    return MemoryUsage(
        rss=own.rss,
        vms=own.vms,
        total_rss=own.rss + sum(i.rss for i in child_infos),
        total_vms=own.vms + sum(i.vms for i in child_infos),
        children=len(children),
    )
