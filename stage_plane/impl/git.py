import logging
import os
import subprocess
from pathlib import Path
from typing import Any

from stage_plane.base import Author, Baseline, RemoteStore, TreeEntry
from stage_plane.errors import ConflictError, NotFoundError, TransportError

logger = logging.getLogger(__name__)

TREE_MODE = "040000"


def _run_git_bytes(
    git_dir: Path,
    args: list[str],
    input: bytes | None = None,
    env: dict[str, str] | None = None,
) -> bytes:
    try:
        result = subprocess.run(
            ["git", f"--git-dir={git_dir}", *args],
            input=input,
            capture_output=True,
            check=True,
            env={**os.environ, **env} if env else None,
        )
    except FileNotFoundError as e:
        raise TransportError(f"git executable not available: {e}")
    return result.stdout


def _run_git(
    git_dir: Path,
    args: list[str],
    input: bytes | None = None,
    env: dict[str, str] | None = None,
) -> str:
    return _run_git_bytes(git_dir, args, input=input, env=env).decode("utf-8").strip()


def _stderr(error: subprocess.CalledProcessError) -> str:
    stderr = error.stderr or b""
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", errors="replace")
    return stderr.strip()


class GitRemoteStore(RemoteStore):
    """
    Remote store backed by local git repositories (usually bare) under `root`.

    Only plumbing commands are used, so no working tree or index is involved
    and the branch is moved with `update-ref <new> <old>`, which git performs
    as a compare-and-swap under its ref lock.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).absolute()

    def _repr_pretty_(self, p: Any, cycle: bool) -> None:
        if cycle:
            p.text("GitRemoteStore(...)")
        else:
            p.text(f"GitRemoteStore(root={self.root})")

    def _git_dir(self, target: str) -> Path:
        for candidate in (self.root / target, self.root / f"{target}.git"):
            if (candidate / "HEAD").exists() or (candidate / ".git").exists():
                return candidate / ".git" if (candidate / ".git").is_dir() else candidate
        raise NotFoundError(f"Repository '{target}' not found under {self.root}")

    def _rev_parse(self, git_dir: Path, rev: str) -> str | None:
        try:
            return _run_git(git_dir, ["rev-parse", "--verify", "--quiet", rev]) or None
        except subprocess.CalledProcessError:
            return None

    def seed(self, target: str, ref: str, files: dict[str, bytes], message: str = "Initial commit") -> str:
        """Create a bare repository if needed and point `ref` at a root commit of `files`."""
        git_dir = self.root / target
        if not (git_dir / "HEAD").exists():
            git_dir.mkdir(parents=True, exist_ok=True)
            subprocess.run(
                ["git", "init", "--bare", f"--initial-branch={ref}", str(git_dir)],
                check=True,
                capture_output=True,
            )
        entries = [TreeEntry(path, self.write_blob(target, content)) for path, content in files.items()]
        tree = self.create_tree(target, entries)
        revision = self.create_commit(target, tree, [], message, Author("seed", "seed@localhost"))
        _run_git(self._git_dir(target), ["update-ref", f"refs/heads/{ref}", revision])
        return revision

    def read_baseline(self, target: str, ref: str) -> Baseline:
        git_dir = self._git_dir(target)
        head = self._rev_parse(git_dir, f"refs/heads/{ref}^{{commit}}")
        if head is None:
            raise NotFoundError(f"Branch '{ref}' not found in {target}")

        try:
            root_tree = _run_git(git_dir, ["rev-parse", f"{head}^{{tree}}"])
            listing = _run_git_bytes(git_dir, ["ls-tree", "-r", "-z", root_tree])
        except subprocess.CalledProcessError as e:
            raise TransportError(f"Failed to list {target}@{ref}: {_stderr(e)}")

        entries = {}
        try:
            for record in listing.decode("utf-8").split("\0"):
                if not record:
                    continue
                meta, path = record.split("\t", 1)
                mode, kind, object_ref = meta.split(" ")
                entries[path] = TreeEntry(path, object_ref, mode, kind)
        except ValueError as e:
            # UnicodeDecodeError included: only UTF-8 paths can be staged
            raise TransportError(f"Unreadable tree listing for {target}@{ref}: {e}")
        return Baseline(head_revision=head, root_tree=root_tree, entries=entries)

    def write_blob(self, target: str, content: bytes) -> str:
        try:
            return _run_git(self._git_dir(target), ["hash-object", "-w", "--stdin"], input=content)
        except subprocess.CalledProcessError as e:
            raise TransportError(f"Failed to write blob to {target}: {_stderr(e)}")

    def read_blob(self, target: str, object_ref: str) -> bytes:
        try:
            return _run_git_bytes(self._git_dir(target), ["cat-file", "blob", object_ref])
        except subprocess.CalledProcessError:
            raise NotFoundError(f"Blob '{object_ref}' not found in {target}")

    def create_tree(self, target: str, entries: list[TreeEntry]) -> str:
        git_dir = self._git_dir(target)

        # directory path -> {name: entry, or None for a subdirectory}
        directories: dict[str, dict[str, TreeEntry | None]] = {"": {}}
        for entry in entries:
            parent, _, name = entry.path.rpartition("/")
            directories.setdefault(parent, {})[name] = entry
            while parent:
                grandparent, _, dir_name = parent.rpartition("/")
                directories.setdefault(grandparent, {}).setdefault(dir_name, None)
                parent = grandparent

        def depth(directory: str) -> int:
            return directory.count("/") + 1 if directory else 0

        trees: dict[str, str] = {}
        for directory in sorted(directories, key=depth, reverse=True):
            records = []
            for name, entry in directories[directory].items():
                if entry is None:
                    child = f"{directory}/{name}" if directory else name
                    records.append(f"{TREE_MODE} tree {trees[child]}\t{name}")
                else:
                    records.append(f"{entry.mode} {entry.type} {entry.object_ref}\t{name}")
            payload = "".join(record + "\0" for record in records).encode("utf-8")
            try:
                trees[directory] = _run_git(git_dir, ["mktree", "-z"], input=payload)
            except subprocess.CalledProcessError as e:
                raise TransportError(f"Failed to create tree in {target}: {_stderr(e)}")
        return trees[""]

    def create_commit(
        self,
        target: str,
        tree: str,
        parents: list[str],
        message: str,
        author: Author,
    ) -> str:
        args = ["commit-tree", tree]
        for parent in parents:
            args += ["-p", parent]
        env = {
            "GIT_AUTHOR_NAME": author.name,
            "GIT_AUTHOR_EMAIL": author.email,
            "GIT_COMMITTER_NAME": author.name,
            "GIT_COMMITTER_EMAIL": author.email,
        }
        try:
            return _run_git(self._git_dir(target), args, input=message.encode("utf-8"), env=env)
        except subprocess.CalledProcessError as e:
            raise TransportError(f"Failed to create commit in {target}: {_stderr(e)}")

    def update_ref(self, target: str, ref: str, revision: str, expected: str) -> None:
        git_dir = self._git_dir(target)
        try:
            _run_git(
                git_dir,
                ["update-ref", "-m", "stage-plane: publish", f"refs/heads/{ref}", revision, expected],
            )
        except subprocess.CalledProcessError as e:
            current = self._rev_parse(git_dir, f"refs/heads/{ref}")
            if current is None:
                raise NotFoundError(f"Branch '{ref}' not found in {target}")
            if current != expected:
                raise ConflictError(
                    f"Branch '{ref}' moved from {expected[:7]} to {current[:7]}. "
                    f"Repository has been updated. Please refresh and try again."
                )
            raise TransportError(
                f"Failed to update {ref} in {target}: {_stderr(e)}", ambiguous=False
            )
        logger.debug(f"Moved {target}@{ref} from {expected[:7]} to {revision[:7]}")


def create_git_remote_store(root: str | Path) -> GitRemoteStore:
    return GitRemoteStore(root)
