import base64
import contextlib
import functools
import logging
import os
import subprocess

from transaction.interfaces import TransientError

log = logging.getLogger(__name__)

EMPTY_TREE = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"


class ConflictError(TransientError):
    """
    Raised when the branch has moved on the remote since this session last
    read it.  Nothing is merged and nothing is retried.  Because this is a
    `transaction` transient error, callers may wrap their work in
    ``transaction.manager.attempts()`` to get a retry loop, re-reading the
    branch in each attempt.
    """

    def __init__(self, msg="Branch has moved since it was last read."):
        super(ConflictError, self).__init__(msg)


class RemoteError(Exception):
    """
    Raised when a call to the remote fails.  The underlying error is chained
    as ``__cause__``.
    """


class Remote(object):
    """
    The contract `BranchFS` consumes to talk to a content addressed
    repository.  Which repository is addressed is a property of the instance.

    Entries exchanged with the remote are dicts with ``path``, ``type``
    (``"blob"`` or ``"tree"``), ``mode`` and ``sha`` keys.  Entries returned by
    :meth:`get_tree` also carry ``size`` (``None`` for trees).  Entries passed
    to :meth:`create_tree` may have nested, slash separated paths, in which
    case the intermediate trees are built as needed.
    """

    def get_branch(self, name):
        """
        Returns ``{"name": ..., "commit": ..., "tree": ...}`` for the head of
        the named branch.
        """
        raise NotImplementedError

    def get_tree(self, sha, recursive=True):
        """
        Returns the flat list of entries in the tree `sha`.
        """
        raise NotImplementedError

    def get_blob(self, sha):
        """
        Returns ``{"content": ..., "encoding": ...}`` for the blob `sha`.
        """
        raise NotImplementedError

    def create_blob(self, content):
        raise NotImplementedError

    def create_tree(self, entries):
        raise NotImplementedError

    def create_commit(self, message, tree, parents):
        raise NotImplementedError

    def update_ref(self, name, sha, force=False):
        """
        Points branch `name` at commit `sha`.  Unless `force` is set the
        update must be a fast forward of the current head, otherwise
        `ConflictError` is raised.
        """
        raise NotImplementedError

    def delete_path(self, path, sha, branch, message):
        """
        Deletes the blob at `path` from the head of `branch` in a commit of its
        own.  `sha` must match the blob currently at `path`.  Returns
        ``{"commit": ..., "tree": ...}`` for the new head.
        """
        raise NotImplementedError


def _remote_call(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kw):
        try:
            return method(self, *args, **kw)
        except subprocess.CalledProcessError as e:
            log.debug("%s failed: %s", method.__name__, e)
            raise RemoteError("%s failed: %s" % (method.__name__, e)) from e

    return wrapper


class LocalGitRemote(Remote):
    """
    A `Remote` backed by a git repository in the real, local filesystem,
    driven through git plumbing commands.

    **Constructor Arguments**

    ``path``

       The path to the repository.  A non-bare repository may be given, in
       which case its `.git` directory is used.

    ``branch``

       If the named branch does not exist and `create` is set, it is seeded
       with an empty root commit.

    ``create``

       If there is no Git repository at `path`, should a bare one be created?
       The default is `True`.

    ``user_name``, ``user_email``

       Identity recorded on commits.  When omitted, git's own configuration
       is used.

    ``path_encoding``

       Encoding of paths stored in the repository.  The default is `utf-8`.
    """

    def __init__(
        self,
        path,
        branch="master",
        create=True,
        user_name=None,
        user_email=None,
        path_encoding="utf-8",
    ):
        db = path
        if os.path.exists(os.path.join(path, ".git")):
            db = os.path.join(path, ".git")
        if not os.path.exists(os.path.join(db, "HEAD")):
            if not create:
                raise ValueError("No database found in %s" % path)
            _check_output(["git", "init", "--bare", "--quiet", path])
            _check_output(["git", "config", "core.quotepath", "false"], cwd=path)
            db = path

        self.db = db
        self.user_name = user_name
        self.user_email = user_email
        self.path_encoding = path_encoding

        if create and self._resolve("refs/heads/%s" % branch) is None:
            self._seed(branch)

    def _git(self, *args, **kw):
        return _check_output(("git",) + args, cwd=self.db, **kw)

    def _oid(self, *args, **kw):
        return self._git(*args, **kw).strip().decode("ascii")

    def _resolve(self, rev):
        try:
            oid = self._git("rev-parse", "--verify", "--quiet", rev)
        except subprocess.CalledProcessError:
            return None
        return oid.strip().decode("ascii")

    def _env(self, **extra):
        gitenv = os.environ.copy()
        if self.user_name:
            gitenv["GIT_AUTHOR_NAME"] = gitenv["GIT_COMMITTER_NAME"] = self.user_name
        if self.user_email:
            gitenv["GIT_AUTHOR_EMAIL"] = gitenv["GIT_COMMITTER_EMAIL"] = gitenv[
                "EMAIL"
            ] = self.user_email
        gitenv.update(extra)
        return gitenv

    @_remote_call
    def _seed(self, branch):
        log.debug("Seeding branch %s with an empty commit", branch)
        commit = self.create_commit("Initial commit", self.create_tree([]), [])
        self.update_ref(branch, commit, force=True)

    @_remote_call
    def get_branch(self, name):
        commit = self._resolve("refs/heads/%s^{commit}" % name)
        if commit is None:
            raise RemoteError("No such branch: %s" % name)
        return {
            "name": name,
            "commit": commit,
            "tree": self._oid("rev-parse", "%s^{tree}" % commit),
        }

    @_remote_call
    def get_tree(self, sha, recursive=True):
        args = ["ls-tree", "-l", "-z"]
        if recursive:
            args.extend(["-r", "-t"])
        args.append(sha)
        entries = []
        for record in self._git(*args).split(b"\0"):
            if not record:
                continue
            meta, path = record.split(b"\t", 1)
            mode, type, oid, size = meta.split()
            if type not in (b"blob", b"tree"):
                continue  # submodules
            entries.append(
                {
                    "path": path.decode(self.path_encoding),
                    "mode": mode.decode("ascii"),
                    "type": type.decode("ascii"),
                    "sha": oid.decode("ascii"),
                    "size": None if size == b"-" else int(size),
                }
            )
        return entries

    @_remote_call
    def get_blob(self, sha):
        content = self._git("cat-file", "blob", sha)
        return {
            "content": base64.b64encode(content).decode("ascii"),
            "encoding": "base64",
            "size": len(content),
        }

    @_remote_call
    def create_blob(self, content):
        if isinstance(content, str):
            content = content.encode("utf-8")
        return self._oid("hash-object", "-w", "--stdin", input=content)

    @_remote_call
    def create_tree(self, entries):
        root = _PendingTree()
        for entry in entries:
            node = root
            for name in entry["path"].split("/"):
                node = node.children.setdefault(name, _PendingTree())
            node.entry = entry
        return self._write_tree(root)

    def _write_tree(self, node):
        records = []
        for name, child in sorted(node.children.items()):
            if child.children:
                oid = self._write_tree(child)
                mode, type = b"040000", b"tree"
            else:
                oid = child.entry.get("sha")
                mode = child.entry["mode"].encode("ascii")
                type = child.entry["type"].encode("ascii")
            if not oid or (type == b"tree" and oid == EMPTY_TREE):
                continue  # Directory with nothing in it yet
            records.append((mode, type, oid, name))

        # Save tree object out to database
        with _popen(
            ["git", "mktree", "-z"],
            cwd=self.db,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
        ) as proc:
            for mode, type, oid, name in records:
                proc.stdin.write(mode)
                proc.stdin.write(b" ")
                proc.stdin.write(type)
                proc.stdin.write(b" ")
                proc.stdin.write(oid.encode("ascii"))
                proc.stdin.write(b"\t")
                proc.stdin.write(name.encode(self.path_encoding))
                proc.stdin.write(b"\0")
            proc.stdin.close()
            oid = proc.stdout.read().strip()
        return oid.decode("ascii")

    @_remote_call
    def create_commit(self, message, tree, parents):
        args = ["commit-tree", tree, "-m", message]
        for parent in parents:
            args.append("-p")
            args.append(parent)
        return self._oid(*args, env=self._env())

    @_remote_call
    def update_ref(self, name, sha, force=False):
        ref = "refs/heads/%s" % name
        current = self._resolve(ref)
        if force or current is None:
            self._git("update-ref", ref, sha)
            return

        if not self._is_ancestor(current, sha):
            raise ConflictError("Update of %s is not a fast forward." % name)

        # Compare and swap, in case somebody got in since we looked.
        try:
            self._git("update-ref", ref, sha, current, stderr=subprocess.PIPE)
        except subprocess.CalledProcessError as e:
            raise ConflictError("%s was updated concurrently." % name) from e

    def _is_ancestor(self, ancestor, descendant):
        try:
            self._git("merge-base", "--is-ancestor", ancestor, descendant)
        except subprocess.CalledProcessError as e:
            if e.returncode == 1:
                return False
            raise
        return True

    @_remote_call
    def delete_path(self, path, sha, branch, message):
        head = self.get_branch(branch)
        entries = self.get_tree(head["tree"])
        current = [e for e in entries if e["path"] == path and e["type"] == "blob"]
        if not current:
            raise RemoteError("No such file on %s: %s" % (branch, path))
        if current[0]["sha"] != sha:
            raise ConflictError("%s does not match %s on %s." % (sha, path, branch))

        # Trees are rebuilt from the remaining blobs, dropping emptied folders
        tree = self.create_tree(
            [e for e in entries if e["type"] == "blob" and e["path"] != path]
        )

        commit = self.create_commit(message, tree, [head["commit"]])
        self.update_ref(branch, commit)
        log.debug("Deleted %s from %s in %s", path, branch, commit)
        return {"commit": commit, "tree": tree}


class _PendingTree(object):
    entry = None

    def __init__(self):
        self.children = {}


@contextlib.contextmanager
def _popen(args, **kw):
    proc = subprocess.Popen(args, **kw)
    yield proc
    for stream in (proc.stdin, proc.stdout, proc.stderr):
        if stream is not None:
            stream.close()
    retcode = proc.wait()
    if retcode != 0:
        raise subprocess.CalledProcessError(retcode, repr(args))


_check_output = subprocess.check_output
