#!/usr/bin/env python3
"""
Name: coredump
Description: extract the core dump embedded in a problem report
License: artistic2
"""

import sys
import os
import argparse
import base64
import binascii
import enum
import gzip
import io
import zlib

__version__ = "1.0"

EX_SUCCESS = 0
EX_FAILURE = 1

MARKER = b"CoreDump:"
DEFAULT_OUTPUT = "CoreDump.core"

# Block lines carry this single byte in front of their base64 text.
CONTINUATION = b" "

GZIP_MAGIC = b"\x1f\x8b\x08"

CHUNK_SIZE = io.DEFAULT_BUFFER_SIZE


class MarkerNotFound(ValueError):
    """Raised when the input ends before the start-of-block marker line."""


class SaveError(OSError):
    """Raised when the extracted core dump cannot be written out."""


class Compression(enum.Enum):
    GZIP = "gzip"
    ZLIB = "zlib"


def sniff_compression(head):
    """
    Chooses the compression format from the first bytes of a stream.
    Anything that is not gzip is treated as the legacy zlib format.
    """
    if head == GZIP_MAGIC:
        return Compression.GZIP
    return Compression.ZLIB


class LinePrefixReader(io.RawIOBase):
    """
    Adapts the line-oriented encoded block to a plain byte stream.

    Each refill reads one line from `source`, checks that it starts with the
    continuation space and keeps the rest of the line in a scratch buffer.
    The line terminator stays in the payload; the base64 layer drops it.
    The first line without the leading space ends the stream, and so does
    end of input, including a final line cut off before its newline.
    """

    def __init__(self, source):
        self._source = source
        self._scratch = b""
        self._done = False

    def readable(self):
        return True

    def readinto(self, b):
        view = memoryview(b).cast("B")
        if not self._scratch:
            if not len(view) or self._done:
                return 0
            line = self._source.readline()
            if not line.endswith(b"\n") or not line.startswith(CONTINUATION):
                # Input ran out, possibly mid-line, or this is the first
                # line after the block.
                self._done = True
                return 0
            self._scratch = line[1:]

        n = min(len(view), len(self._scratch))
        view[:n] = self._scratch[:n]
        self._scratch = self._scratch[n:]
        return n

    def close(self):
        if not self.closed:
            self._source.close()
        super().close()


class Base64StreamDecoder(io.RawIOBase):
    """
    Streaming decoder for standard, padded base64.

    CR and LF are skipped wherever they appear. Any other byte outside the
    alphabet, misplaced padding or a truncated final quantum raises
    binascii.Error. readinto() only returns short at end of stream.
    """

    def __init__(self, source, chunk_size=CHUNK_SIZE):
        self._source = source
        self._chunk_size = chunk_size
        self._pending = b""
        self._decoded = bytearray()
        self._padded = False
        self._eof = False

    def readable(self):
        return True

    def readinto(self, b):
        view = memoryview(b).cast("B")
        while len(self._decoded) < len(view) and not self._eof:
            self._fill()

        n = min(len(view), len(self._decoded))
        view[:n] = self._decoded[:n]
        del self._decoded[:n]
        return n

    def _fill(self):
        chunk = self._source.read(self._chunk_size)
        if not chunk:
            self._eof = True
            if self._pending:
                raise binascii.Error("truncated base64 input")
            return

        data = self._pending + chunk.translate(None, b"\r\n")
        usable = len(data) - len(data) % 4
        quanta, self._pending = data[:usable], data[usable:]
        if not quanta:
            return
        if self._padded:
            raise binascii.Error("excess data after base64 padding")
        # validate=True rejects stray bytes and padding inside the data.
        self._decoded += base64.b64decode(quanta, validate=True)
        self._padded = quanta.endswith(b"=")

    def close(self):
        if not self.closed:
            self._source.close()
        super().close()


class ZlibReader(io.RawIOBase):
    """Decompresses a zlib stream read from `source`."""

    def __init__(self, source, chunk_size=CHUNK_SIZE):
        self._source = source
        self._chunk_size = chunk_size
        self._inflater = zlib.decompressobj()

    def readable(self):
        return True

    def readinto(self, b):
        view = memoryview(b).cast("B")
        if not len(view):
            return 0
        while not self._inflater.eof:
            data = self._inflater.unconsumed_tail
            if not data:
                data = self._source.read(self._chunk_size)
            out = self._inflater.decompress(data, len(view))
            if out:
                view[:len(out)] = out
                return len(out)
            if not data:
                raise EOFError("zlib stream ended before the end-of-stream marker was reached")
        # Bytes after the end of the zlib stream are ignored.
        return 0


class FormatSniffingDecompressor(io.RawIOBase):
    """
    Picks gzip or zlib from the first decoded bytes and decompresses.

    The format is sniffed on the first read by peeking at the stream, so
    the chosen decompressor still sees the magic bytes. The decompressor is
    created exactly once; every later read goes straight to it.
    """

    def __init__(self, raw):
        self._decompressor = None
        self.compression = None
        self._source = io.BufferedReader(raw)

    def readable(self):
        return True

    def readinto(self, b):
        if self._decompressor is None:
            self._decompressor = self._open_decompressor()
        return self._decompressor.readinto(b)

    def _open_decompressor(self):
        head = self._source.peek(len(GZIP_MAGIC))[:len(GZIP_MAGIC)]
        self.compression = sniff_compression(head)
        if self.compression is Compression.GZIP:
            return gzip.GzipFile(fileobj=self._source, mode="rb")
        return ZlibReader(self._source)

    def close(self):
        if not self.closed:
            try:
                if self._decompressor is not None:
                    self._decompressor.close()
            finally:
                self._source.close()
        super().close()


def find_block(stream, marker=MARKER):
    """
    Reads `stream` up to and including the marker line, leaving it at the
    first line of the encoded block. Returns the marker line.
    """
    for line in stream:
        if line.startswith(marker):
            return line
    raise MarkerNotFound(f"no line starting with {marker.decode('ascii', 'replace')!r}")


def open_core_dump(stream):
    """Builds the decoding chain over a stream positioned at the block."""
    return FormatSniffingDecompressor(Base64StreamDecoder(LinePrefixReader(stream)))


def open_report(path):
    if path == '-':
        return sys.stdin.buffer
    return open(path, 'rb')


def write_core_dump(reader, out, chunk=b""):
    """
    Writes `chunk` and then the rest of `reader` to `out`, returning the
    number of bytes written. Failed writes raise SaveError.
    """
    written = 0
    while True:
        if chunk:
            try:
                out.write(chunk)
                out.flush()
            except OSError as e:
                raise SaveError(e.errno, e.strerror, out.name) from e
            written += len(chunk)
        chunk = reader.read(CHUNK_SIZE)
        if not chunk:
            return written


def extract(report, output=DEFAULT_OUTPUT, marker=MARKER):
    """
    Extracts the core dump from the problem report at `report` into
    `output` and returns the number of bytes written.

    The first chunk is decoded before the output file is created, so a
    block that fails straight away leaves no output behind.
    """
    with open_report(report) as stream:
        find_block(stream, marker)
        with open_core_dump(stream) as reader:
            chunk = reader.read(CHUNK_SIZE)
            with open(output, 'wb') as out:
                return write_core_dump(reader, out, chunk)


def main():
    """Parses arguments and extracts the core dump."""
    parser = argparse.ArgumentParser(
        description="Extract the core dump embedded in a problem report.",
        usage="%(prog)s [-o FILE] [-m MARKER] [-v] problem_report",
        epilog=f"Extracted core dump is saved as {DEFAULT_OUTPUT} unless -o is given."
    )
    parser.add_argument(
        '-p', '--path',
        help='path to problem report (same as the positional argument)'
    )
    parser.add_argument(
        '-o', '--output',
        default=DEFAULT_OUTPUT,
        help=f'write the core dump to FILE (default: {DEFAULT_OUTPUT})'
    )
    parser.add_argument(
        '-m', '--marker',
        default=MARKER.decode('ascii'),
        help="prefix of the line preceding the encoded block (default: %(default)s)"
    )
    parser.add_argument(
        '-v', '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )
    parser.add_argument(
        'problem_report',
        nargs='?',
        help="Problem report to read. Use '-' for standard input."
    )

    args = parser.parse_args()
    program_name = os.path.basename(sys.argv[0])

    report = args.path or args.problem_report
    if not report:
        parser.print_help(sys.stderr)
        sys.exit(EX_FAILURE)

    try:
        extract(report, args.output, args.marker.encode())
    except MarkerNotFound as e:
        print(f"{program_name}: unable to read: {e}", file=sys.stderr)
        sys.exit(EX_FAILURE)
    # BadGzipFile is an OSError, so it has to be caught first.
    except (binascii.Error, zlib.error, EOFError, gzip.BadGzipFile) as e:
        print(f"{program_name}: unable to decode: {e}", file=sys.stderr)
        sys.exit(EX_FAILURE)
    except SaveError as e:
        print(f"{program_name}: unable to save file: {e}", file=sys.stderr)
        sys.exit(EX_FAILURE)
    except OSError as e:
        # Only the two open() calls attach a filename.
        if e.filename == report:
            print(f"{program_name}: unable to open '{report}': {e.strerror}", file=sys.stderr)
        elif e.filename == args.output:
            print(f"{program_name}: unable to create output file: {e}", file=sys.stderr)
        else:
            print(f"{program_name}: unable to read: {e}", file=sys.stderr)
        sys.exit(EX_FAILURE)

    sys.exit(EX_SUCCESS)


if __name__ == "__main__":
    main()
