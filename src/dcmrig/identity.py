import logging
import threading
import uuid

logger = logging.getLogger(__name__)


class MappingTableError(Exception):
    pass


class UnmappedIdentity(Exception):
    def __init__(self, key):
        super().__init__(f"DeID for {key} is not found in the mapping table")
        self.key = key


def load_mapping_table(path):
    """
    Read a mapping table: one "DeID,PatientID" pair per line, eg

        DeID_001,U1423571

    Returns a dict of original value to external identifier. Lines which
    don't have exactly two non-empty fields are skipped with a warning. If
    the same original value appears twice, the first line wins.

    Raises MappingTableError if the file can't be read or has no valid lines
    at all.
    ---
    path: pathlib.Path

    returns: dict of { str: str }
    """
    mapping = {}
    try:
        with open(path, "r", encoding="utf-8-sig", newline="") as fh:
            lines = fh.readlines()
    except (OSError, UnicodeDecodeError) as e:
        raise MappingTableError(f"Can't open the mapping table {path}: {e}")
    for n, line in enumerate(lines, start=1):
        line = line.strip()
        if not line:
            continue
        parts = [p.strip() for p in line.split(",")]
        if len(parts) != 2 or not parts[0] or not parts[1]:
            logger.warning(f"{path} line {n}: invalid line '{line}'")
            continue
        external_id, original = parts
        if original in mapping:
            logger.warning(
                f"{path} line {n}: {original} is already mapped to "
                f"{mapping[original]}, ignoring {external_id}"
            )
            continue
        mapping[original] = external_id
    if not mapping:
        raise MappingTableError(f"No valid DeID,PatientID lines in {path}")
    logger.info(f"Loaded {len(mapping)} identities from {path}")
    return mapping


class IdentityRegistry:
    """
    Maps the value of the match tag (usually PatientID) to a pseudonymous
    identifier, for the lifetime of a single run. One registry is shared by
    all of the worker threads: the lookup and insert in resolve happen under
    a lock, so only one identifier is ever assigned to each key.

    Subclasses provide assign, which is called (with the lock held) the first
    time a key is seen.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._identities = {}

    def resolve(self, key):
        with self._lock:
            identifier = self._identities.get(key)
            if identifier is None:
                identifier = self.assign(key)
                self._identities[key] = identifier
                logger.debug(f"New identifier for {key}")
            return identifier

    def assign(self, key):
        raise NotImplementedError

    def items(self):
        with self._lock:
            return list(self._identities.items())

    def __contains__(self, key):
        with self._lock:
            return key in self._identities

    def __len__(self):
        with self._lock:
            return len(self._identities)


class AnonymousRegistry(IdentityRegistry):
    """Gives each new key a random UUID, with an optional prefix"""

    def __init__(self, prefix=""):
        super().__init__()
        self.prefix = prefix

    def assign(self, key):
        anon_id = str(uuid.uuid4())
        if self.prefix:
            return f"{self.prefix}_{anon_id}"
        return anon_id


class MappingRegistry(IdentityRegistry):
    """Looks keys up in a mapping table loaded with load_mapping_table"""

    def __init__(self, mapping):
        super().__init__()
        self.mapping = dict(mapping)

    @classmethod
    def from_file(cls, path):
        return cls(load_mapping_table(path))

    def assign(self, key):
        if key not in self.mapping:
            raise UnmappedIdentity(key)
        return self.mapping[key]
