# ldbstore

Pure-Python building blocks for the files of a LevelDB-compatible database:
where files are kept, the manifest records that describe the database state,
and the sorted table (`.ldb`) files that hold the data.

## Installation

```
pip install ldbstore
```

Tests run with `pytest` (install the `test` extra).

## Modules

| Module | Contents |
| --- | --- |
| `ldbstore.storage` | `FileType`, `FileDesc`, `file_desc_ok`, the `Storage` interface, `CountingStorage`, and the errors `StorageError`, `FileOpenError`, `InvalidFileError`, `LockedError`, `ClosedError`, `CorruptedError` (`is_corrupted`) |
| `ldbstore.memstorage` | `MemStorage`, a storage held in memory |
| `ldbstore.filestorage` | `FileStorage` / `open_file`, a storage kept in a directory; `generate_name`, `generate_old_name`, `parse_name`; `ReadOnlyError` |
| `ldbstore.record` | `SessionRecord` and its parts `CompPtr`, `AddedTable`, `DeletedTable`; `RecordTag`; `ManifestCorruptedError` |
| `ldbstore.format` | `TableOptions`, `Compression`, `KeyRange`, `BlockHandle`, `put_uvarint`, `read_uvarint`, `crc32c`, and the table errors `TableError`, `TableCorruptedError`, `NotFoundError`, `ReaderReleasedError`, `IteratorReleasedError` |
| `ldbstore.snappy` | `compress`, `decompress`, `decoded_len`, `max_encoded_len`, `SnappyError` |
| `ldbstore.writer` | `TableWriter`, `BlockWriter`, `shared_prefix_len` |
| `ldbstore.block` | `Block` and `BlockIterator` |
| `ldbstore.reader` | `TableReader` and `TableIterator` |

## Storage

A storage keeps numbered files of four types (`FileType.MANIFEST`,
`JOURNAL`, `TABLE`, `TEMP`) and a meta pointer to the current manifest.
Every backend has `lock`, `log`, `set_meta`, `get_meta`, `list`, `open`,
`create`, `remove`, `rename` and `close`.

```python
from ldbstore.storage import FileDesc, FileType
from ldbstore.memstorage import MemStorage

stor = MemStorage()
lock = stor.lock()                 # a second lock() raises LockedError
fd = FileDesc(FileType.TABLE, 1)

with stor.create(fd) as w:
    w.write(b"abc")
with stor.open(fd) as r:
    assert r.read() == b"abc"

print(stor.list(FileType.ALL))     # [FileDesc(type=..., num=1)]
lock.unlock()
```

`MemStorage` lets a file be open only once at a time; opening it again
before closing raises `FileOpenError`. `get_meta` raises
`FileNotFoundError` until `set_meta` has been called.

A directory works the same way:

```python
from ldbstore.filestorage import open_file

stor = open_file("/tmp/mydb", read_only=False)
try:
    fd = stor.get_meta()          # the manifest that CURRENT points to
finally:
    stor.close()
```

`open_file` creates the directory if needed (unless read-only) and takes a
lock on its `LOCK` file; a second writer, or a writer next to readers,
gets `LockedError`, while several read-only opens may share it. Log lines
go to `LOG`, which is moved to `LOG.old` once it passes 1 MiB.
`set_meta` writes `CURRENT` through a `CURRENT.<num>` file and keeps the
previous content in `CURRENT.bak`; `get_meta` falls back across those
files, skips ones that are corrupted or point at a missing manifest, and
raises `CorruptedError` or `FileNotFoundError` when none is usable. A
read-only storage raises `ReadOnlyError` on writes.

`generate_name` and `parse_name` convert between `FileDesc` values and file
names such as `000100.log`, `000005.ldb` (or the older `000005.sst`) and
`MANIFEST-000002`; `parse_name` returns `None` for other names.

`CountingStorage(storage)` wraps any storage and counts the bytes read
from and written to its files (`reads()`, `writes()`).

## Manifest records

```python
from ldbstore.record import SessionRecord

rec = SessionRecord()
rec.set_comparer("leveldb.BytewiseComparator")
rec.set_next_file_num(10)
rec.add_table(0, 7, 1024, b"imin-key", b"imax-key")
data = rec.encode()

decoded = SessionRecord()
decoded.decode(data)              # bytes or a binary stream
assert decoded.encode() == data
```

`has(tag)` tells which fields are set. `encode` raises `ValueError` for a
negative number; `decode` raises `ManifestCorruptedError` (a
`CorruptedError`) naming the field that could not be read.

## Tables

```python
import io
from ldbstore.format import Compression, KeyRange, TableOptions
from ldbstore.writer import TableWriter
from ldbstore.reader import TableReader
from ldbstore.storage import FileDesc

opts = TableOptions(block_size=4096, compression=Compression.SNAPPY)
buf = io.BytesIO()
writer = TableWriter(buf, opts)
writer.append(b"k01", b"hello")
writer.append(b"k02", b"world")
writer.close()

data = buf.getvalue()
reader = TableReader(io.BytesIO(data), len(data), FileDesc(), opts)
assert reader.get(b"k01") == b"hello"
for key, value in reader:
    print(key, value)

it = reader.iterator(KeyRange(start=b"k02"))
if it.seek(b"k02"):
    print(it.key(), it.value())
it.release()
```

- Keys must be appended in increasing order, otherwise `append` raises
  `ValueError`. After `close`, further use of the writer raises
  `TableError`. `entries_len`, `blocks_len` and `bytes_len` report progress.
- `TableOptions` also takes `block_restart_interval`, `filter_base_lg`,
  `strict_reader`, a `comparer` (an object with `compare`, `separator` and
  `successor`; `None` means bytewise order) and a `filter` / `alt_filters`
  (objects with `name`, `new_generator()` and `contains(data, key)`; a
  generator has `add(key)` and `generate()` returning the filter bytes).
- `find(key)` returns the first `(key, value)` at or after `key`;
  `find_key` returns just the key. Both consult the filter when there is
  one. `get` returns the value of an exact match. All three raise
  `NotFoundError` when nothing qualifies.
- `offset_of(key)` gives the approximate file offset of a key's data.
- A damaged table does not fail in the constructor; the
  `TableCorruptedError` is raised by later calls instead. Iterators skip
  corrupted data blocks unless `strict_reader` is set, and report errors
  through `error()`; iterating with `for` raises them.
- `BlockWriter`, `Block` and `BlockIterator` handle single blocks for
  lower-level work.

## What this package does not do

It is not a database engine. There is no database object to open, put into
or read from; no write-ahead journal reader or writer, no in-memory table,
no version sets and no compaction. It ships no bloom filter or custom
comparer of its own: filters and comparers must be supplied as described
above.