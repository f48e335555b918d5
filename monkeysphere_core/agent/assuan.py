"""
monkeysphere_core.agent.assuan
------------------------------
Minimal client for the Assuan line protocol spoken by gpg-agent.
"""

from __future__ import annotations
from typing import Optional
import re, socket, subprocess

from monkeysphere_core.errors import AgentError
from monkeysphere_core.logger import get_logger

_PCT = re.compile(rb"%([0-9A-Fa-f]{2})")


def percent_plus_escape(value: str) -> str:
    """Escape for Assuan arguments: '+', '"', '%' and control characters
    become %XX, spaces become '+'."""
    out = []
    for ch in value:
        if ch in '+"%' or ord(ch) < 0x20:
            out.append("%%%02X" % ord(ch))
        elif ch == " ":
            out.append("+")
        else:
            out.append(ch)
    return "".join(out)


def percent_unescape(data: bytes) -> bytes:
    return _PCT.sub(lambda m: bytes([int(m.group(1), 16)]), data)


def trim_and_unescape(value: str) -> str:
    return percent_unescape(value.rstrip().encode("utf-8")).decode("utf-8")


def gpg_agent_socket_path(gpgconf: str = "gpgconf") -> str:
    try:
        res = subprocess.run([gpgconf, "--list-dirs", "agent-socket"], capture_output=True, text=True, check=True)
    except (OSError, subprocess.CalledProcessError) as e:
        raise AgentError(f"'{gpgconf} --list-dirs agent-socket' failed: {e}") from e
    return trim_and_unescape(res.stdout)


def launch_gpg_agent(gpgconf: str = "gpgconf") -> None:
    try:
        subprocess.run([gpgconf, "--launch", "gpg-agent"], capture_output=True, check=True)
    except (OSError, subprocess.CalledProcessError) as e:
        raise AgentError(f"failed to launch gpg-agent: {e}") from e


class AssuanClient:
    def __init__(self, sock: socket.socket, logger=None):
        self.sock = sock
        self.log = logger or get_logger("monkeysphere.agent.assuan")
        self._buf = b""

    @classmethod
    def connect(cls, path: str, logger=None, launch: bool = True, gpgconf: str = "gpgconf") -> "AssuanClient":
        log = logger or get_logger("monkeysphere.agent.assuan")
        try:
            sock = cls._open(path)
        except (FileNotFoundError, ConnectionRefusedError):
            if not launch:
                raise AgentError(f"could not connect to gpg-agent at {path}") from None
            log.info("could not find gpg-agent, trying to launch it...")
            launch_gpg_agent(gpgconf)
            try:
                sock = cls._open(path)
            except OSError as e:
                raise AgentError(f"failed to connect to gpg-agent after launching: {e}") from e
        client = cls(sock, log)
        greeting = client._readline()
        if not greeting.startswith(b"OK"):
            client.close()
            raise AgentError(f"unexpected gpg-agent greeting: {greeting!r}")
        return client

    @staticmethod
    def _open(path: str) -> socket.socket:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(path)
        except BaseException:
            sock.close()
            raise
        return sock

    def _readline(self) -> bytes:
        while b"\n" not in self._buf:
            chunk = self.sock.recv(4096)
            if not chunk:
                raise AgentError("gpg-agent closed the connection")
            self._buf += chunk
        line, _, self._buf = self._buf.partition(b"\n")
        return line

    def transact(self, command: str) -> bytearray:
        """Send one command; return the concatenated D-line payload."""
        self.sock.sendall(command.encode("utf-8") + b"\n")
        data = bytearray()
        while True:
            line = self._readline()
            if line == b"OK" or line.startswith(b"OK "):
                return data
            if line.startswith(b"ERR"):
                raise AgentError(f"{command.split()[0]} failed: {line[4:].decode(errors='replace')}")
            if line.startswith(b"D "):
                data += percent_unescape(line[2:])
            elif line.startswith(b"S "):
                self.log.debug("status: %s", line[2:].decode(errors="replace"))
            elif line.startswith(b"INQUIRE"):
                self.log.debug("inquire: %s", line[8:].decode(errors="replace"))
                self.sock.sendall(b"END\n")
            elif line.startswith(b"#"):
                continue
            else:
                raise AgentError(f"unexpected line from gpg-agent: {line[:40]!r}")

    def option(self, name: str, value: Optional[str]) -> None:
        if value:
            self.transact(f"OPTION {name}={value}")

    def close(self) -> None:
        self.sock.close()

    def __enter__(self) -> "AssuanClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
