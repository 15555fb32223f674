#!/usr/bin/env -S python3 -I
# Using option -I https://docs.python.org/3/using/cmdline.html#cmdoption-I
# in case 'AcceptEnv' is misconfigured.

# vcs-gatekeeper, an SSH forced command restricting keys to Git and Mercurial
# repositories
# Copyright (C) 2022  Valentin Lorentz
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License version 3,
# as published by the Free Software Foundation.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""
Restricts an SSH key to a set of repositories.

To be used in ~/.ssh/authorized_keys with the "command" option, see sshd(8)::

    command="/path/to/gatekeeper.py user steve",no-pty,no-port-forwarding ssh-ed25519 ...
    command="/path/to/gatekeeper.py repo project-a,project-b",no-pty ssh-ed25519 ...

With "user", the repositories are looked up in PERMISSIONS_PATH; with "repo"
they are listed directly on the key.
"""

import enum
import logging
import os
import re
import sys
from typing import (
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    NamedTuple,
    NoReturn,
    Optional,
    Union,
)


PERMISSIONS_PATH = os.path.expanduser("~/.vcs-permissions")
"""
Path to the permissions file, one ``user = repo1, repo2`` mapping per line.

A missing file is the same as an empty one: every "user" key is denied.
"""

LOG_PATH = os.path.expanduser("~/.vcs-gatekeeper.log")
"""
Path to the audit log. Each decision appends exactly one line.
"""

WILDCARD = "all"
"""
Permission value matching any repository.
"""

logger = logging.getLogger("gatekeeper")


class ConfigError(Exception):
    """
    Exception raised on any configuration issue.
    """


class ClientError(Exception):
    """
    Exception raised on any misbehavior from a client (either a misconfiguration
    or malicious)
    """


class AccessDenied(ClientError):
    """
    Exception raised when the key is not allowed to access the requested repository.
    """


class CommandKind(enum.Enum):
    GIT_UPLOAD_PACK = "git-upload-pack"
    GIT_RECEIVE_PACK = "git-receive-pack"
    HG_SERVE = "hg"
    UNRECOGNIZED = None


EXECUTABLES: Dict[CommandKind, str] = {
    CommandKind.GIT_UPLOAD_PACK: "/usr/bin/git-upload-pack",
    CommandKind.GIT_RECEIVE_PACK: "/usr/bin/git-receive-pack",
    CommandKind.HG_SERVE: "/usr/bin/hg",
}
"""
Paths to the binaries to execute, for each kind of command.

These are hardcoded to prevent execution of arbitrary executables
in case AcceptEnv is misconfigured.
Edit the values above if your distribution installs them elsewhere.
"""

_GIT_COMMAND_RE = re.compile(
    r"(?P<verb>git-upload-pack|git-receive-pack) "
    r"(?P<quote>['\"])(?P<path>[^'\"]+)(?P=quote)"
)
_HG_COMMAND_RE = re.compile(r"hg -R (?P<path>[^\s'\"]+) serve --stdio")

_PERMISSION_LINE_RE = re.compile(r"\s*(?P<key>[^\s=#;][^=]*?)\s*=(?P<values>.*)")


class VcsCommand(NamedTuple):
    raw: str
    kind: CommandKind
    path: Optional[str]

    @property
    def argv(self) -> List[str]:
        """Argument vector to exec, without going through a shell."""
        if self.kind is CommandKind.HG_SERVE:
            return ["hg", "-R", self.path, "serve", "--stdio"]
        elif self.kind is CommandKind.UNRECOGNIZED:
            raise ConfigError(f"Cannot execute unrecognized command {self.raw!r}")
        return [self.kind.value, self.path]


class UserMode(NamedTuple):
    principal: str


class RepoMode(NamedTuple):
    repos: FrozenSet[str]


Identity = Union[UserMode, RepoMode]


class AccessDecision(NamedTuple):
    """
    Outcome of `decide()`. *rule* is the permission that granted access,
    *reason* why it was denied; both are only used for the audit log.
    """

    allowed: bool
    rule: Optional[str] = None
    reason: Optional[str] = None


class PermissionStore:
    """
    Maps lower-cased principal names to the repositories they may access.

    The file is read lazily, on the first lookup, and at most once.
    Any problem reading it results in an empty store rather than an error, so
    users are denied instead of seeing a crash.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._permissions: Optional[Dict[str, List[str]]] = None

    @staticmethod
    def parse(lines: Iterable[str]) -> Dict[str, List[str]]:
        """Parses ``key = value1, value2`` lines, skipping anything else."""
        permissions: Dict[str, List[str]] = {}
        for line in lines:
            m = _PERMISSION_LINE_RE.fullmatch(line.rstrip("\r\n"))
            if m is None:
                continue
            values = [value.strip() for value in m.group("values").split(",")]
            values = [value for value in values if value]
            if not values:
                continue
            key = m.group("key").lower()
            permissions.setdefault(key, []).extend(values)
        return permissions

    @staticmethod
    def _decode(raw_lines: Iterable[bytes]) -> Iterator[str]:
        # Undecodable lines are skipped like any other malformed line.
        for raw_line in raw_lines:
            try:
                yield raw_line.decode("utf-8")
            except UnicodeDecodeError:
                continue

    def load(self) -> None:
        if self._permissions is not None:
            return

        try:
            with open(self.path, "rb") as fd:
                permissions = self.parse(self._decode(fd))
        except FileNotFoundError:
            logger.debug("No permissions file at %s", self.path)
            permissions = {}
        except OSError as e:
            logger.warning("Ignoring unreadable permissions file %s: %s", self.path, e)
            permissions = {}

        self._permissions = permissions

    def permissions_for(self, principal: str) -> List[str]:
        self.load()
        return list((self._permissions or {}).get(principal.lower(), []))


def parse_command(raw: str) -> VcsCommand:
    """Recognizes the Git or Mercurial command a client requested.

    The whole string must match one of the known shapes; anything else is
    returned with kind UNRECOGNIZED and no path.
    """
    m = _GIT_COMMAND_RE.fullmatch(raw)
    if m is not None:
        return VcsCommand(raw, CommandKind(m.group("verb")), m.group("path"))

    m = _HG_COMMAND_RE.fullmatch(raw)
    if m is not None:
        return VcsCommand(raw, CommandKind.HG_SERVE, m.group("path"))

    return VcsCommand(raw, CommandKind.UNRECOGNIZED, None)


def extract_repo(raw: str) -> Optional[str]:
    return parse_command(raw).path


def repo_name(path: Optional[str]) -> Optional[str]:
    """Reduces a repository path to its last component, which is what
    permissions are declared with.

    >>> repo_name("/home/x/foo/")
    'foo'
    >>> repo_name("foo")
    'foo'
    """
    if not path:
        return None
    name = os.path.basename(path.rstrip("/"))
    return name or None


def parse_identity(args: List[str]) -> Optional[Identity]:
    """Parses the arguments given to the forced command in authorized_keys.

    Returns None, after logging why, if they are neither ``user <name>``
    nor ``repo <name>[,<name>...] [<name> ...]``.
    """
    if not args:
        logger.warning("Invalid key arguments: expected 'user' or 'repo', got none")
        return None

    (mode, *values) = args

    if mode == "user":
        try:
            (principal,) = values
        except ValueError:
            logger.warning(
                "Invalid key arguments: 'user' expects exactly one name, got %r",
                values,
            )
            return None
        if not principal.strip():
            logger.warning("Invalid key arguments: empty user name")
            return None
        return UserMode(principal.strip())

    if mode == "repo":
        repos = frozenset(
            repo.strip() for repo in ",".join(values).split(",") if repo.strip()
        )
        if not repos:
            logger.warning("Invalid key arguments: 'repo' expects at least one name")
            return None
        return RepoMode(repos)

    logger.warning("Invalid key arguments: expected 'user' or 'repo', got %r", mode)
    return None


def _match(allowed: Iterable[str], repo: str) -> Optional[str]:
    for pattern in allowed:
        if pattern == repo or pattern == WILDCARD:
            return pattern
    return None


def decide(
    identity: Optional[Identity], repo: Optional[str], store: PermissionStore
) -> AccessDecision:
    """Decides whether the key's identity may access the bare repository name
    *repo*, and writes the decision to the audit log.

    A "user" identity is looked up in the *store*, a "repo" identity is
    self-contained.
    """
    if not repo:
        decision = AccessDecision(False, reason="no repository requested")
        who = "-"
    elif identity is None:
        decision = AccessDecision(False, reason="malformed identity declaration")
        who = "-"
    elif isinstance(identity, UserMode):
        who = f"user {identity.principal}"
        pattern = _match(store.permissions_for(identity.principal), repo)
        if pattern is None:
            decision = AccessDecision(
                False, reason=f"{identity.principal!r} has no permission for it"
            )
        else:
            decision = AccessDecision(
                True, rule=f"{identity.principal.lower()}: {pattern}"
            )
    else:
        declared = ",".join(sorted(identity.repos))
        who = f"repo {declared}"
        pattern = _match(sorted(identity.repos), repo)
        if pattern is None:
            decision = AccessDecision(False, reason="not in the key's repository list")
        else:
            decision = AccessDecision(True, rule=f"repo {declared}: {pattern}")

    if decision.allowed:
        logger.info("ALLOW %s -> %s (%s)", who, repo, decision.rule)
    else:
        logger.warning("DENY %s -> %s (%s)", who, repo, decision.reason)
    return decision


def rewrite_command(command: VcsCommand, home_dir: str) -> VcsCommand:
    """Returns a copy of *command* pointing to the repository inside *home_dir*."""
    if command.kind is CommandKind.UNRECOGNIZED:
        raise ConfigError(f"Cannot rewrite unrecognized command {command.raw!r}")

    path = f"{home_dir}/{command.path}"
    if command.kind is CommandKind.HG_SERVE:
        raw = f"hg -R {path} serve --stdio"
    else:
        raw = f"{command.kind.value} '{path}'"
    return command._replace(raw=raw, path=path)


def get_original_command() -> str:
    """Returns the command the client requested, from $SSH_ORIGINAL_COMMAND."""
    try:
        return os.environ["SSH_ORIGINAL_COMMAND"]
    except KeyError:
        raise ConfigError(
            "Authentication to vcs-gatekeeper successful; "
            "but this is not a shell. Use a git or hg client to connect."
        )


def get_peer_address() -> str:
    for variable in ("SSH_CONNECTION", "SSH_CLIENT"):
        fields = os.environ.get(variable, "").split()
        if fields:
            return fields[0]
    return "-"


class _PeerFilter(logging.Filter):
    def __init__(self, peer: str) -> None:
        super().__init__()
        self.peer = peer

    def filter(self, record: logging.LogRecord) -> bool:
        record.peer = self.peer
        return True


def setup_logging(path: str, peer: str) -> None:
    """Sends the audit log to *path*. If it cannot be opened, the audit log
    is discarded, as stderr goes to the client."""
    handler: logging.Handler
    try:
        handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    except OSError as e:
        print(f"Cannot open log file: {e}", file=sys.stderr)
        handler = logging.NullHandler()

    handler.setFormatter(
        logging.Formatter("%(asctime)s %(peer)s %(levelname)s %(message)s")
    )
    handler.addFilter(_PeerFilter(peer))

    for old_handler in list(logger.handlers):
        logger.removeHandler(old_handler)
        old_handler.close()
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def execute(command: VcsCommand) -> NoReturn:
    """execs the (possibly rewritten) command the client requested."""
    executable = EXECUTABLES[command.kind]
    os.execv(executable, command.argv)


def main() -> NoReturn:
    setup_logging(LOG_PATH, get_peer_address())

    # Get what the client is requesting access to
    command = parse_command(get_original_command())
    if command.kind is CommandKind.UNRECOGNIZED:
        logger.warning("ABORT unrecognized command %r", command.raw)
        raise ClientError(f"Invalid command: {command.raw!r}")

    # git and hg would take it as an option
    if command.path.startswith("-"):
        logger.warning("ABORT repository path looks like an option %r", command.raw)
        raise ClientError(f"Invalid repository path: {command.path!r}")

    identity = parse_identity(sys.argv[1:])
    store = PermissionStore(PERMISSIONS_PATH)

    # Check the key is allowed to access the repository it requested access to
    decision = decide(identity, repo_name(command.path), store)
    if not decision.allowed:
        raise AccessDenied(f"Access to {command.path} is not allowed")

    # Repositories are relative to the home directory when not found as given
    if not os.path.exists(command.path):
        command = rewrite_command(command, os.path.expanduser("~"))
        logger.info("Rewrote command to %r", command.raw)

    execute(command)


def cli() -> NoReturn:
    try:
        main()
    except (ConfigError, ClientError) as e:
        print(e.args[0], file=sys.stderr)
        sys.exit(1)
    except Exception:
        logger.exception("Internal error")
        print("Internal error, access denied.", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    cli()
