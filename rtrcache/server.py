"""The RPKI-to-Router cache server: listener, client list and ROA refreshes."""

from __future__ import annotations

import argparse
import configparser
import gc
import logging
import random
import socket
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, NamedTuple, Optional, Sequence

from rtrcache.client import CacheState, Client
from rtrcache.roa import Roa, make_diff, read_roas

log = logging.getLogger(__name__)

REFRESH_ROA = 6 * 60.0  # seconds between two downloads of the VRP feeds
CONFIG_SECTION = "rpkirtr"

_UINT32 = 0xFFFFFFFF
_ACCEPT_POLL = 0.5
_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class _Config(NamedTuple):
    log: str
    port: int


def load_config(path: str | Path) -> _Config:
    """Read the log file path and listening port from an INI file."""
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"failed to read config file: {path}")
    parser = configparser.ConfigParser()
    parser.read(path)
    if not parser.has_section(CONFIG_SECTION):
        raise ValueError(f"config file has no [{CONFIG_SECTION}] section")
    section = parser[CONFIG_SECTION]
    try:
        port = section.getint("port")
    except (ValueError, configparser.Error) as exc:
        raise ValueError(f"port set needs to be a number: {exc}") from exc
    if port is None:
        raise ValueError("port set needs to be a number: no port given")
    return _Config(log=section.get("log", ""), port=port)


def _peer_address(conn: socket.socket) -> str:
    try:
        peer = conn.getpeername()
    except OSError:
        return ""
    host = peer[0] if isinstance(peer, tuple) else str(peer)
    if isinstance(host, str) and host.startswith("::ffff:"):
        host = host[len("::ffff:"):]
    return host


class CacheServer:
    """An RPKI cache serving ROAs to connected routers."""

    def __init__(
        self,
        urls: Sequence[str],
        roas: Iterable[Roa] = (),
        *,
        session: Optional[int] = None,
        refresh_interval: float = REFRESH_ROA,
        fetch: Callable[[Sequence[str]], list[Roa]] = read_roas,
    ) -> None:
        self.urls = list(urls)
        self.state = CacheState(roas=list(roas))
        self.session = random.randrange(65535) if session is None else session
        self.refresh_interval = refresh_interval
        self.clients: list[Client] = []
        self.last_check: Optional[datetime] = datetime.now()
        self.last_error: Optional[datetime] = None
        self.last_update: Optional[datetime] = None
        self._fetch = fetch
        self._listener: Optional[socket.socket] = None
        self._connections: dict[Client, socket.socket] = {}
        self._stop = threading.Event()

    def listen(self, port: int) -> int:
        """Open the listening socket on every address; return the bound port."""
        if socket.has_dualstack_ipv6():
            listener = socket.create_server(
                ("", port), family=socket.AF_INET6, dualstack_ipv6=True
            )
        else:
            listener = socket.create_server(("", port))
        listener.settimeout(_ACCEPT_POLL)
        self._listener = listener
        bound = listener.getsockname()[1]
        log.info("Server started on port %d", bound)
        return bound

    def accept(self, conn: socket.socket) -> Client:
        """Register a new connection and return its client."""
        addr = _peer_address(conn)
        client = Client(stream=conn.makefile("rwb"), addr=addr, state=self.state)
        with self.state.lock:
            self.clients.append(client)
            self._connections[client] = conn
            total = len(self.clients)
        log.info("Connection from %s, total clients: %d", addr, total)
        return client

    def remove(self, client: Client) -> Optional[socket.socket]:
        """Drop a client from the list; return its socket if it was known."""
        with self.state.lock:
            log.info("Removing client %s", client.addr)
            if client in self.clients:
                self.clients.remove(client)
            return self._connections.pop(client, None)

    def handle_client(self, client: Client) -> None:
        """Serve one client until it goes away, then clean up after it."""
        log.info("Serving %s", client.addr)
        try:
            client.handle()
        finally:
            conn = self.remove(client)
            try:
                client.stream.close()
            except OSError:
                pass
            if conn is not None:
                conn.close()

    def refresh(self) -> bool:
        """Download the feeds once, update serial and diff, and notify clients.

        Returns False when the download failed and the old ROAs were kept.
        """
        now = datetime.now()
        with self.state.lock:
            self.last_check = now
        try:
            roas = self._fetch(self.urls)
        except (OSError, ValueError) as exc:
            log.warning("Unable to update ROAs, so keeping existing ROAs: %s", exc)
            with self.state.lock:
                self.last_error = now
            return False

        with self.state.lock:
            diff = make_diff(roas, self.state.roas, self.state.serial)
            self.state.diff = diff
            if diff.diff:
                self.last_update = now
            self.state.serial = (self.state.serial + 1) & _UINT32
            self.state.roas = list(roas)
            serial = self.state.serial
            clients = list(self.clients)
        log.info("roas updated, serial is now %d", serial)

        for client in clients:
            log.info("sending a notify to %s", client.addr)
            try:
                client.notify(serial, self.session)
            except OSError as exc:
                log.warning("unable to notify %s: %s", client.addr, exc)
        return True

    def update_roas(self) -> None:
        """Refresh the ROAs periodically until the server is closed."""
        while not self._stop.wait(self.refresh_interval):
            self.refresh()
            self.status_report()

    def status_report(self) -> list[str]:
        """Log the current state of the cache and return the logged lines."""
        with self.state.lock:
            roas = list(self.state.roas)
            diff = self.state.diff
            lines = ["*** Status ***"]
            lines.append(f"I currently have {len(self.clients)} clients connected")
            lines.extend(
                f"{number}: {client.addr}"
                for number, client in enumerate(self.clients, start=1)
            )
            lines.append(f"Current serial number is {self.state.serial}")
            lines.append(f"Last diff is {str(diff.diff).lower()}")
            lines.append(
                f"Current size of diff is {len(diff.add_roas) + len(diff.del_roas)}"
            )
            if diff.add_roas:
                lines.append("ROAs to be added:")
                lines.extend(str(roa) for roa in diff.add_roas)
            if diff.del_roas:
                lines.append("ROAs to be deleted:")
                lines.extend(str(roa) for roa in diff.del_roas)
            v4 = sum(1 for roa in roas if roa.is_ipv4)
            v6 = len(roas) - v4
            lines.append(f"There are {len(roas)} ROAs")
            lines.append(f"There are {v4} IPv4 ROAs and {v6} IPv6 ROAs")
            if self.last_check is not None:
                lines.append(f"Last check was {self.last_check.strftime(_TIME_FORMAT)}")
            if self.last_error is not None:
                lines.append(
                    "Last error checking update was "
                    f"{self.last_error.strftime(_TIME_FORMAT)}"
                )
            if self.last_update is not None:
                lines.append(
                    f"Last ROA change was {self.last_update.strftime(_TIME_FORMAT)}"
                )
        collections = sum(stats.get("collections", 0) for stats in gc.get_stats())
        lines.append(f"\tNumGC = {collections}")
        lines.append("*** eom ***")
        for line in lines:
            log.info("%s", line)
        return lines

    def serve_forever(self) -> None:
        """Accept connections and serve each on its own thread until closed."""
        if self._listener is None:
            raise RuntimeError("listen() must be called before serve_forever()")
        listener = self._listener
        while not self._stop.is_set():
            try:
                conn, _ = listener.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if self._stop.is_set():
                    break
                log.warning("%s", exc)
                continue
            client = self.accept(conn)
            threading.Thread(
                target=self.handle_client, args=(client,), daemon=True
            ).start()

    def close(self) -> None:
        """Stop accepting and refreshing, and shut down open connections."""
        self._stop.set()
        if self._listener is not None:
            self._listener.close()
        with self.state.lock:
            connections = list(self._connections.values())
        for conn in connections:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass


def _default_config_path() -> Path:
    return Path(sys.argv[0]).resolve().parent / "config.ini"


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the cache server; returns the process exit status."""
    parser = argparse.ArgumentParser(description="RPKI-to-Router cache server")
    parser.add_argument("--urls", default="", help="json locations of VRPs")
    parser.add_argument(
        "--config", default=None, help="path of the INI configuration file"
    )
    args = parser.parse_args(argv)

    config_path = Path(args.config) if args.config else _default_config_path()
    try:
        config = load_config(config_path)
    except (OSError, ValueError) as exc:
        print(exc, file=sys.stderr)
        return 1
    if not config.log:
        print("failed to open logfile: no log file configured", file=sys.stderr)
        return 1
    try:
        handler = logging.FileHandler(config.log, mode="a")
    except OSError as exc:
        print(f"failed to open logfile: {exc}", file=sys.stderr)
        return 1
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(filename)s:%(lineno)d: %(message)s")
    )
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(logging.INFO)

    urls = [url for url in args.urls.split(",") if url]
    roas = read_roas(urls)
    log.info("Initial roa set downloaded")

    server = CacheServer(urls, roas)
    threading.Thread(target=server.update_roas, daemon=True).start()
    try:
        server.listen(config.port)
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    except OSError as exc:
        print(exc, file=sys.stderr)
        return 1
    finally:
        server.close()
        root.removeHandler(handler)
        handler.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())