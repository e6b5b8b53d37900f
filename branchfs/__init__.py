import base64
import collections
import errno
import io
import logging
import os
import threading

from branchfs.remote import ConflictError, LocalGitRemote, Remote, RemoteError

log = logging.getLogger(__name__)

DEFAULT_MESSAGE = "automatic commit from branchfs"

BLOB_MODE = "100644"
TREE_MODE = "040000"

BranchState = collections.namedtuple("BranchState", "name commit tree")
FileInfo = collections.namedtuple("FileInfo", "name size mode is_dir")

__all__ = [
    "BranchFS",
    "BranchState",
    "ConflictError",
    "FileInfo",
    "LocalGitRemote",
    "Remote",
    "RemoteError",
]


class BranchFS(object):
    """
    An instance of `BranchFS` exposes a filesystem view of one branch of a
    remote repository.  Every change made through it is recorded as a new
    commit on that branch.  Operations on one instance are serialized with a
    lock, so an instance may be shared between threads.

    **Paths**

    All paths use forward slash `/` as a separator, regardless of the path
    separator of the underlying operating system.  A leading `/` is ignored,
    so `/a/b` and `a/b` name the same file.  The path `/` (or the empty
    string) represents the root folder of the branch.

    **Concurrency**

    The branch head is read when the instance is created.  Each commit first
    checks that the remote head has not moved since; if it has,
    :class:`ConflictError` is raised and nothing is merged or retried.  Call
    :meth:`reload` to pick up the remote state and try again.

    **Constructor Arguments**

    ``remote``

       A :class:`branchfs.remote.Remote`, eg. a
       :class:`branchfs.remote.LocalGitRemote`.

    ``branch``

       The name of the branch to work on.  The default is `master`.

    ``message``

       The commit message used for every commit made by this instance.
    """

    name = "branchfs"

    def __init__(self, remote, branch="master", message=DEFAULT_MESSAGE):
        self.remote = remote
        self.session = _Session(remote, branch, message)

    @property
    def head(self):
        """
        The id of the commit this instance last synchronized with.
        """
        return self.session.branch.commit

    def reload(self):
        """
        Throw away local state and re-read the branch from the remote.
        """
        self.session.reload()

    def commit(self):
        """
        Commit the current state of the tree.  Mutating operations call this
        themselves; it is only useful after a failed operation left local
        changes behind.
        """
        self.session.commit()

    def open(self, path, mode="r", encoding=None, errors=None, newline=None):
        """
        Open a file for reading or writing.

        Implements the semantics of Python's built in `open`: text modes
        return a file-like object which reads or writes strings, binary modes
        one which reads or writes bytes.  Modes `w` and `a` create the file
        if it doesn't exist, `x` requires that it doesn't.  Changes are
        committed when the file is closed.

        Opening a directory for reading returns a read-only directory view
        which may be iterated for the directory's contents.
        """
        if "b" in mode:
            text = False
            if "t" in mode:
                raise ValueError("can't have text and binary mode at once")
        else:
            text = True

        kind = mode.replace("b", "").replace("t", "")
        update = "+" in kind
        kind = kind.replace("+", "", 1)
        access = os.O_WRONLY
        if update:
            access = os.O_RDWR
        if kind == "r":
            flags = os.O_RDWR if update else os.O_RDONLY
        elif kind == "w":
            flags = access | os.O_CREAT | os.O_TRUNC
        elif kind == "a":
            flags = access | os.O_CREAT | os.O_APPEND
        elif kind == "x":
            flags = access | os.O_CREAT | os.O_EXCL
        else:
            raise ValueError("Bad mode: %s" % mode)

        f = self.open_file(path, flags)
        if text and isinstance(f, _FileHandle):
            f = io.TextIOWrapper(f, encoding, errors, newline)
        return f

    def open_file(self, path, flags=os.O_RDONLY):
        """
        Open a file using `os.O_*` flags.  Supported flags are `O_RDONLY`,
        `O_WRONLY`, `O_RDWR`, `O_CREAT`, `O_EXCL`, `O_APPEND` and `O_TRUNC`.
        Always returns a binary file-like object, or a directory view.
        """
        readable = not flags & os.O_WRONLY
        writable = bool(flags & (os.O_WRONLY | os.O_RDWR))
        session = self.session
        with session.lock:
            normal = _normalize(path)
            entry = session.lookup(normal)
            if entry is None and normal:
                if not flags & os.O_CREAT:
                    raise _NoSuchFileOrDirectory(path)
                return self._create(
                    path, normal, readable, writable, bool(flags & os.O_APPEND)
                )

            if flags & os.O_CREAT and flags & os.O_EXCL:
                raise _FileExists(path)

            if entry is None or entry.type == "tree":
                if writable:
                    raise _IsADirectory(path)
                return _DirectoryView(session, normal)

            truncate = writable and flags & os.O_TRUNC
            if truncate:
                data = b""
            else:
                data = session.read_blob(entry)
            f = _FileHandle(
                session, normal, data, readable, writable, bool(flags & os.O_APPEND)
            )
            if truncate:
                f.dirty = True
            return f

    def create(self, path):
        """
        Create a new, empty file and return it open for reading and writing.
        The file must not already exist and its folder must.  The empty file
        is committed right away.
        """
        with self.session.lock:
            return self._create(path, _normalize(path), True, True)

    def _create(self, path, normal, readable, writable, append=False):
        session = self.session
        if not normal:
            raise _InvalidPath(path)
        if session.lookup(normal) is not None:
            raise _FileExists(path)
        session.check_parent(normal, path)

        sha = self.remote.create_blob(b"")
        session.add(_Entry(normal, "blob", BLOB_MODE, sha, 0))
        session.set_dirty(normal)
        session.rebuild(normal, force=True)
        session.commit()
        return _FileHandle(session, normal, b"", readable, writable, append)

    def mkdir(self, path):
        """
        Create a new directory.  The parent of the new directory must already
        exist.  Nothing is committed until a file is written inside it.
        """
        session = self.session
        with session.lock:
            if not path:
                raise _InvalidPath(path)
            normal = _normalize(path)
            if not normal or session.lookup(normal) is not None:
                raise _FileExists(path)
            session.check_parent(normal, path)
            session.add(_Entry(normal, "tree", TREE_MODE))

    def mkdirs(self, path):
        """
        Create a new directory, including any ancestors which need to be created
        in order to create the directory with the given `path`.
        """
        session = self.session
        with session.lock:
            normal = _normalize(path)
            parsed = normal.split("/") if normal else []
            for i in range(len(parsed)):
                prefix = "/".join(parsed[: i + 1])
                entry = session.lookup(prefix)
                if entry is None:
                    session.add(_Entry(prefix, "tree", TREE_MODE))
                elif entry.type != "tree":
                    raise _NotADirectory(path)

    def rm(self, path):
        """
        Remove a single file, in a commit of its own.
        """
        session = self.session
        with session.lock:
            if not path:
                raise _InvalidPath(path)
            normal = _normalize(path)
            if not normal:
                raise _IsADirectory(path)
            entry = session.lookup(normal)
            if entry is None:
                raise _NoSuchFileOrDirectory(path)
            if entry.type == "tree":
                if next(session.list_children(normal), None) is not None:
                    raise _IsADirectory(path)
                # Never committed, nothing to delete remotely
                session.discard(normal)
                return
            session.remove(entry)

    def rmtree(self, path):
        """
        Remove a directory and any of its contents.  Each file is removed in a
        commit of its own.
        """
        session = self.session
        with session.lock:
            normal = _normalize(path)
            if not normal:
                raise ValueError("Can't remove root directory.")
            entry = session.lookup(normal)
            if entry is None:
                raise _NoSuchFileOrDirectory(path)
            if entry.type == "blob":
                return self.rm(normal)

            # TODO: remove all files in a single commit
            prefix = normal + "/"
            paths = [
                e.path
                for e in session.entries
                if e.type == "blob" and e.path.startswith(prefix)
            ]
            for blob_path in paths:
                self.rm(blob_path)
            session.discard(normal)

    def mv(self, src, dst):
        """
        Move a file or directory from `src` path to `dst` path.  `dst` must
        not exist yet, but its parent folder must.
        """
        session = self.session
        with session.lock:
            snormal = _normalize(src)
            dnormal = _normalize(dst)
            if not snormal or session.lookup(snormal) is None:
                raise _NoSuchFileOrDirectory(src)
            if not dnormal or session.lookup(dnormal) is not None:
                raise _FileExists(dst)
            if dnormal.startswith(snormal + "/"):
                raise _InvalidPath(dst)
            session.check_parent(dnormal, dst)

            session.rename(snormal, dnormal)
            session.rebuild(dnormal, force=True)
            session.rebuild(_parent(snormal))
            session.commit()

    def stat(self, path):
        """
        Returns a :class:`FileInfo` for the file or directory at `path`.
        """
        session = self.session
        with session.lock:
            normal = _normalize(path)
            if not normal:
                return FileInfo("/", 0, int(TREE_MODE, 8), True)
            entry = session.lookup(normal)
            if entry is None:
                raise _NoSuchFileOrDirectory(path)
            return entry.info()

    def chmod(self, path, mode):
        """
        Does nothing.  Files and folders have fixed modes.
        """

    def utime(self, path, times=None):
        """
        Does nothing.  Times are not tracked.
        """

    def hash(self, path=""):
        """
        Returns the sha1 hash of the object referred to by `path`, or `None`
        for a folder that has nothing committed in it yet.  If `path` is
        omitted the root of the branch is used.
        """
        session = self.session
        with session.lock:
            normal = _normalize(path)
            if not normal:
                return session.branch.tree
            entry = session.lookup(normal)
            if entry is None:
                raise _NoSuchFileOrDirectory(path)
            return entry.sha

    def listdir(self, path=""):
        """
        Return list of files in indicated directory.  If `path` is omitted, the
        root folder is used.
        """
        session = self.session
        with session.lock:
            normal = _normalize(path)
            if normal:
                entry = session.lookup(normal)
                if entry is None:
                    raise _NoSuchFileOrDirectory(path)
                if entry.type != "tree":
                    raise _NotADirectory(path)
            return _DirectoryView(session, normal).listdir()

    def exists(self, path):
        """
        Returns boolean indicating whether a file or directory exists at the
        given `path`.
        """
        session = self.session
        with session.lock:
            normal = _normalize(path)
            return not normal or session.lookup(normal) is not None

    def isdir(self, path):
        """
        Returns boolean indicating whether the given `path` is a directory.
        """
        session = self.session
        with session.lock:
            normal = _normalize(path)
            if not normal:
                return True
            entry = session.lookup(normal)
            return entry is not None and entry.type == "tree"


class _Session(object):
    """
    Cached branch head and flat tree for one `BranchFS`, along with the tree
    rebuilding and commit logic that operates on them.
    """

    def __init__(self, remote, branch, message):
        self.remote = remote
        self.message = message
        self.lock = threading.RLock()
        self.branch = self._get_branch(branch)
        self.entries = self._read_tree(self.branch.tree)

    def _get_branch(self, name):
        branch = self.remote.get_branch(name)
        return BranchState(branch["name"], branch["commit"], branch["tree"])

    def _read_tree(self, sha):
        log.debug("Reading tree %s", sha)
        entries = self.remote.get_tree(sha, recursive=True)
        return [_Entry.from_remote(e) for e in entries]

    def reload(self):
        with self.lock:
            self.branch = self._get_branch(self.branch.name)
            self.entries = self._read_tree(self.branch.tree)

    def lookup(self, path):
        path = path.lstrip("/")
        for entry in self.entries:
            if entry.path == path:
                return entry
        return None

    def check_parent(self, normal, path):
        parent = _parent(normal)
        if not parent:
            return
        entry = self.lookup(parent)
        if entry is None or entry.type != "tree":
            raise _MissingParent(path)

    def list_children(self, path):
        for entry in list(self.entries):
            if _parent(entry.path) == path:
                yield entry

    def read_blob(self, entry):
        blob = self.remote.get_blob(entry.sha)
        encoding = blob.get("encoding", "base64")
        if encoding == "base64":
            return base64.b64decode(blob["content"])
        if encoding == "utf-8":
            return blob["content"].encode("utf-8")
        raise ValueError("Unknown blob encoding: %s" % encoding)

    def add(self, entry):
        self.entries.append(entry)

    def discard(self, path):
        prefix = path + "/"
        self.entries = [
            e for e in self.entries if e.path != path and not e.path.startswith(prefix)
        ]

    def rename(self, src, dst):
        self.set_dirty(src)
        prefix = src + "/"
        for entry in self.entries:
            if entry.path == src:
                entry.path = dst
            elif entry.path.startswith(prefix):
                entry.path = dst + entry.path[len(src) :]
        self.set_dirty(dst)

    def set_dirty(self, path):
        parent = _parent(path)
        while parent:
            entry = self.lookup(parent)
            if entry is not None:
                entry.sha = None
            parent = _parent(parent)

    def rebuild(self, path, force=False):
        if not path:
            return

        entry = self.lookup(path)
        if entry is None:
            raise _NoSuchFileOrDirectory(path)
        if entry.type == "tree" and (entry.sha is None or force):
            self._write_tree(entry)
        self.rebuild(_parent(path), False)

    def _write_tree(self, entry):
        prefix = entry.path + "/"
        children = []
        for child in self.list_children(entry.path):
            if child.type == "tree" and child.sha is None:
                self._write_tree(child)
            children.append(child.as_remote(child.path[len(prefix) :]))
        entry.sha = self.remote.create_tree(children)

    def flush(self, path, data):
        with self.lock:
            entry = self.lookup(path)
            if entry is None:
                raise _NoSuchFileOrDirectory(path)
            entry.sha = self.remote.create_blob(data)
            entry.size = len(data)
            self.set_dirty(path)
            self.rebuild(path, force=True)
            self.commit()

    def remove(self, entry):
        with self.lock:
            result = self.remote.delete_path(
                entry.path, entry.sha, self.branch.name, self.message
            )
            log.debug("Removed %s in %s", entry.path, result["commit"])
            self.branch = BranchState(
                self.branch.name, result["commit"], result["tree"]
            )
            self.entries = self._read_tree(result["tree"])

    def commit(self):
        with self.lock:
            remote = self.remote
            current = self._get_branch(self.branch.name)
            if current.commit != self.branch.commit:
                log.debug(
                    "Head of %s is %s, expected %s",
                    current.name,
                    current.commit,
                    self.branch.commit,
                )
                raise ConflictError(
                    "Commits have been made to %s since it was last read."
                    % current.name
                )

            tree = remote.create_tree([entry.as_remote() for entry in self.entries])
            if tree == current.tree:
                # Nothing actually changed
                log.debug("Tree unchanged, skipping commit on %s", current.name)
                return

            commit = remote.create_commit(self.message, tree, [current.commit])
            remote.update_ref(current.name, commit, force=False)
            log.debug("Committed %s to %s", commit, current.name)
            self.branch = BranchState(current.name, commit, tree)
            self.entries = self._read_tree(tree)


class _Entry(object):
    def __init__(self, path, type, mode, sha=None, size=None):
        self.path = path
        self.type = type
        self.mode = mode
        self.sha = sha
        self.size = size

    @classmethod
    def from_remote(cls, data):
        return cls(
            data["path"], data["type"], data["mode"], data.get("sha"), data.get("size")
        )

    def as_remote(self, path=None):
        return {
            "path": path or self.path,
            "type": self.type,
            "mode": self.mode,
            "sha": self.sha,
        }

    def info(self):
        return FileInfo(
            self.path.rpartition("/")[2],
            self.size or 0,
            int(self.mode, 8),
            self.type == "tree",
        )

    def __repr__(self):
        return "<_Entry %s %s %s>" % (self.type, self.path, self.sha)


class _FileHandle(io.BytesIO):
    dirty = False

    def __init__(self, session, path, data, readable=True, writable=True, append=False):
        super(_FileHandle, self).__init__(data)
        self.session = session
        self.name = path
        self._readable = readable
        self._writable = writable
        self._append = append

    def readable(self):
        return super(_FileHandle, self).readable() and self._readable

    def writable(self):
        return super(_FileHandle, self).writable() and self._writable

    def _check_readable(self):
        if not self.readable():
            raise io.UnsupportedOperation("File not open for reading")

    def _check_writable(self):
        if not self.writable():
            raise io.UnsupportedOperation("File not open for writing")

    def read(self, size=-1):
        self._check_readable()
        return super(_FileHandle, self).read(size)

    def read1(self, size=-1):
        self._check_readable()
        return super(_FileHandle, self).read1(size)

    def readinto(self, b):
        self._check_readable()
        return super(_FileHandle, self).readinto(b)

    def readline(self, size=-1):
        self._check_readable()
        return super(_FileHandle, self).readline(size)

    def readlines(self, hint=None):
        self._check_readable()
        return super(_FileHandle, self).readlines(hint)

    def write(self, b):
        self._check_writable()
        if self._append:
            self.seek(0, io.SEEK_END)
        self.dirty = True
        return super(_FileHandle, self).write(b)

    def writelines(self, lines):
        for line in lines:
            self.write(line)

    def truncate(self, size=None):
        self._check_writable()
        self.dirty = True
        return super(_FileHandle, self).truncate(size)

    def close(self):
        if self.closed:
            return
        dirty, data = self.dirty, self.getvalue()
        self.dirty = False
        super(_FileHandle, self).close()
        if dirty:
            self.session.flush(self.name, data)


class _DirectoryView(object):
    """
    Read-only view of a directory.  The listing is computed from the
    session's current entries each time it is iterated.
    """

    closed = False

    def __init__(self, session, path):
        self.session = session
        self.path = path
        self.name = path or "/"

    def __iter__(self):
        for entry in self.session.list_children(self.path):
            yield entry.info()

    def readdir(self):
        return list(self)

    def listdir(self):
        return [info.name for info in self]

    def readable(self):
        return False

    def writable(self):
        return False

    def read(self, *args):
        raise _IsADirectory(self.name)

    def write(self, *args):
        raise _IsADirectory(self.name)

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


def _normalize(path):
    normal = path.strip("/")
    if normal == ".":
        return ""
    if normal and any(name in ("", ".", "..") for name in normal.split("/")):
        raise _InvalidPath(path)
    return normal


def _parent(path):
    return path.rpartition("/")[0]


def _NoSuchFileOrDirectory(path):
    return IOError(errno.ENOENT, "No such file or directory", path)


def _MissingParent(path):
    return IOError(errno.ENOENT, "No such parent directory", path)


def _IsADirectory(path):
    return IOError(errno.EISDIR, "Is a directory", path)


def _NotADirectory(path):
    return IOError(errno.ENOTDIR, "Not a directory", path)


def _FileExists(path):
    return IOError(errno.EEXIST, "File exists", path)


def _InvalidPath(path):
    return IOError(errno.EINVAL, "Invalid argument", path)
