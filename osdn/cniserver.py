"""HTTP server on a private Unix socket that accepts pod setup and teardown requests.

The SDN CNI plugin forwards the standard CNI environment variables and the
network configuration it was given to this server as JSON. The server turns
them into a :class:`PodRequest` and hands that to a request handler.
"""

from __future__ import annotations

import base64
import binascii
import enum
import http.server
import json
import logging
import os
import shutil
import socketserver
import stat
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Mapping, Optional, Union

logger = logging.getLogger(__name__)

CNI_SERVER_RUN_DIR = "/var/run/openshift-sdn/cniserver"
CNI_SERVER_SOCKET_NAME = "socket"
CNI_SERVER_SOCKET_PATH = f"{CNI_SERVER_RUN_DIR}/{CNI_SERVER_SOCKET_NAME}"
CNI_SERVER_CONFIG_FILE_NAME = "config.json"
CNI_SERVER_CONFIG_FILE_PATH = f"{CNI_SERVER_RUN_DIR}/{CNI_SERVER_CONFIG_FILE_NAME}"


class CNIServerError(Exception):
    """Raised for malformed CNI requests and server setup failures."""


class CNICommand(str, enum.Enum):
    """CNI commands handled by the server."""

    ADD = "ADD"
    UPDATE = "UPDATE"
    DEL = "DEL"


@dataclass
class Config:
    """Configuration the server passes on to the CNI plugin."""

    mtu: int = 0
    service_network_cidr: str = ""

    def to_json(self) -> str:
        return json.dumps(
            {"mtu": self.mtu, "serviceNetworkCIDR": self.service_network_cidr}
        )

    @classmethod
    def from_json(cls, data: Union[str, bytes]) -> "Config":
        parsed = json.loads(data)
        if not isinstance(parsed, dict):
            raise ValueError("config must be a JSON object")
        mtu = parsed.get("mtu", 0)
        cidr = parsed.get("serviceNetworkCIDR", "")
        if not isinstance(mtu, int) or isinstance(mtu, bool) or mtu < 0:
            raise ValueError(f"invalid mtu {mtu!r}")
        if not isinstance(cidr, str):
            raise ValueError(f"invalid serviceNetworkCIDR {cidr!r}")
        return cls(mtu=mtu, service_network_cidr=cidr)


@dataclass
class CNIRequest:
    """Request sent to the server by the CNI plugin."""

    env: dict[str, str] = field(default_factory=dict)
    config: bytes = b""
    host_veth: str = ""

    def to_json(self) -> str:
        data: dict[str, Any] = {}
        if self.env:
            data["env"] = dict(self.env)
        if self.config:
            data["config"] = base64.b64encode(self.config).decode("ascii")
        if self.host_veth:
            data["hostVeth"] = self.host_veth
        return json.dumps(data)

    @classmethod
    def from_json(cls, body: Union[str, bytes]) -> "CNIRequest":
        """Parse a request; raise CNIServerError if it is not valid JSON."""
        try:
            parsed = json.loads(body)
            if not isinstance(parsed, dict):
                raise ValueError("request must be a JSON object")
            env = parsed.get("env") or {}
            if not isinstance(env, dict) or not all(
                isinstance(k, str) and isinstance(v, str) for k, v in env.items()
            ):
                raise ValueError("env must map strings to strings")
            raw_config = parsed.get("config") or ""
            if not isinstance(raw_config, str):
                raise ValueError("config must be a base64 string")
            config = base64.b64decode(raw_config, validate=True)
            host_veth = parsed.get("hostVeth") or ""
            if not isinstance(host_veth, str):
                raise ValueError("hostVeth must be a string")
        except (ValueError, binascii.Error) as exc:
            raise CNIServerError(f"JSON unmarshal error: {exc}") from exc
        return cls(env=env, config=config, host_veth=host_veth)


@dataclass
class PodRequest:
    """A pod operation built from a :class:`CNIRequest`."""

    command: Union[CNICommand, str]
    pod_namespace: str
    pod_name: str
    sandbox_id: str
    netns: str
    host_veth: str = ""
    assigned_ip: str = ""


RequestFunc = Callable[[PodRequest], Optional[bytes]]


def gather_cni_args(env: Mapping[str, str]) -> dict[str, str]:
    """Split the ``CNI_ARGS`` value of ``env`` into a dict of key/value pairs."""
    cni_args = env.get("CNI_ARGS")
    if cni_args is None:
        raise CNIServerError(f"missing CNI_ARGS: '{dict(env)}'")
    args: dict[str, str] = {}
    for arg in cni_args.split(";"):
        parts = arg.split("=")
        if len(parts) != 2:
            raise CNIServerError(f"invalid CNI_ARG '{arg}'")
        args[parts[0].strip()] = parts[1].strip()
    return args


def _command(value: str) -> Union[CNICommand, str]:
    try:
        return CNICommand(value)
    except ValueError:
        return value


def pod_request_from_json(body: Union[str, bytes]) -> PodRequest:
    """Build a :class:`PodRequest` from a JSON-encoded :class:`CNIRequest`."""
    request = CNIRequest.from_json(body)
    env = request.env

    if "CNI_COMMAND" not in env:
        raise CNIServerError("unexpected or missing CNI_COMMAND")
    command = _command(env["CNI_COMMAND"])
    if "CNI_CONTAINERID" not in env:
        raise CNIServerError("missing CNI_CONTAINERID")
    if "CNI_NETNS" not in env:
        raise CNIServerError("missing CNI_NETNS")
    if not request.host_veth and command is CNICommand.ADD:
        raise CNIServerError("missing HostVeth")

    cni_args = gather_cni_args(env)
    if "K8S_POD_NAMESPACE" not in cni_args:
        raise CNIServerError("missing K8S_POD_NAMESPACE")
    if "K8S_POD_NAME" not in cni_args:
        raise CNIServerError("missing K8S_POD_NAME")

    return PodRequest(
        command=command,
        pod_namespace=cni_args["K8S_POD_NAMESPACE"],
        pod_name=cni_args["K8S_POD_NAME"],
        sandbox_id=env["CNI_CONTAINERID"],
        netns=env["CNI_NETNS"],
        host_veth=request.host_veth,
    )


def read_config(config_path: str) -> Config:
    """Read the configuration file the server wrote in its run directory."""
    try:
        with open(config_path, "rb") as handle:
            data = handle.read()
    except FileNotFoundError as exc:
        raise CNIServerError(
            "OpenShift SDN network process is not (yet?) available"
        ) from exc
    except OSError as exc:
        raise CNIServerError(f"could not read config file {config_path!r}: {exc}") from exc
    try:
        return Config.from_json(data)
    except ValueError as exc:
        raise CNIServerError(
            f"could not parse config file {config_path!r}: {exc}"
        ) from exc


class _UnixHTTPServer(socketserver.ThreadingUnixStreamServer):
    daemon_threads = True
    request_func: RequestFunc


class _Handler(http.server.BaseHTTPRequestHandler):
    server: _UnixHTTPServer

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        logger.debug("CNI server: " + format, *args)

    def _send(self, code: int, body: bytes, content_type: str) -> None:
        self.send_response(code)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def _send_error(self, code: int, message: str) -> None:
        self._send(code, (message + "\n").encode(), "text/plain; charset=utf-8")

    def _path(self) -> str:
        return self.path.split("?", 1)[0]

    def do_POST(self) -> None:
        if self._path() != "/":
            self._send_error(404, "404 page not found")
            return
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length > 0 else b""

        try:
            request = pod_request_from_json(body)
        except CNIServerError as exc:
            self._send_error(400, str(exc))
            return

        command = getattr(request.command, "value", request.command)
        logger.debug(
            "Waiting for %s result for pod %s/%s",
            command,
            request.pod_namespace,
            request.pod_name,
        )
        try:
            result = self.server.request_func(request)
        except Exception as exc:  # the handler's failure goes back to the plugin
            self._send_error(400, str(exc))
            return
        try:
            self._send(200, result or b"", "application/json")
        except OSError as exc:
            logger.warning("Error writing %s HTTP response: %s", command, exc)

    def _not_allowed(self) -> None:
        if self._path() == "/":
            self._send_error(405, "Method Not Allowed")
        else:
            self._send_error(404, "404 page not found")

    do_GET = do_PUT = do_DELETE = do_PATCH = do_HEAD = _not_allowed


class CNIServer:
    """Serves CNI requests over HTTP on a root-only Unix domain socket."""

    def __init__(self, rundir: str, config: Config) -> None:
        self.rundir = rundir
        self.config = config
        self._server: Optional[_UnixHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def socket_path(self) -> str:
        return os.path.join(self.rundir, CNI_SERVER_SOCKET_NAME)

    @property
    def config_path(self) -> str:
        return os.path.join(self.rundir, CNI_SERVER_CONFIG_FILE_NAME)

    def _prepare_rundir(self) -> None:
        try:
            info = os.stat(self.rundir)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise CNIServerError(f"could not read CNIServer directory: {exc}") from exc

        if stat.S_ISDIR(info.st_mode) and stat.S_IMODE(info.st_mode) == 0o700:
            for path, what in ((self.socket_path, "socket"), (self.config_path, "config")):
                try:
                    os.remove(path)
                except FileNotFoundError:
                    pass
                except OSError as exc:
                    raise CNIServerError(
                        f"failed to remove old CNIServer {what}: {exc}"
                    ) from exc
            return

        try:
            if stat.S_ISDIR(info.st_mode):
                shutil.rmtree(self.rundir)
            else:
                os.remove(self.rundir)
        except OSError as exc:
            raise CNIServerError(
                f"failed to remove old CNIServer directory: {exc}"
            ) from exc

    def start(self, request_func: Optional[RequestFunc]) -> None:
        """Write the config file and start serving requests with ``request_func``.

        ``request_func`` receives each :class:`PodRequest` and returns the
        response body; an exception it raises becomes a 400 response.
        """
        if request_func is None:
            raise CNIServerError("no pod request handler")

        self._prepare_rundir()
        try:
            os.makedirs(self.rundir, mode=0o700, exist_ok=True)
        except OSError as exc:
            raise CNIServerError(f"failed to create CNIServer directory: {exc}") from exc

        try:
            fd = os.open(self.config_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o444)
            with os.fdopen(fd, "w") as handle:
                handle.write(self.config.to_json())
        except OSError as exc:
            raise CNIServerError(
                f"could not write config file {self.config_path!r}: {exc}"
            ) from exc

        # The socket inherits the permissions of its root-only directory, so
        # no umask manipulation is needed.
        try:
            server = _UnixHTTPServer(self.socket_path, _Handler)
        except OSError as exc:
            raise CNIServerError(f"failed to listen on pod info socket: {exc}") from exc
        try:
            os.chmod(self.socket_path, 0o600)
        except OSError as exc:
            server.server_close()
            raise CNIServerError(f"failed to set pod info socket mode: {exc}") from exc

        server.request_func = request_func
        self._server = server
        self._thread = threading.Thread(target=self._serve, args=(server,), daemon=True)
        self._thread.start()

    @staticmethod
    def _serve(server: _UnixHTTPServer) -> None:
        try:
            server.serve_forever()
        except Exception:
            logger.exception("CNI server serve failed")

    def stop(self) -> None:
        """Stop serving and close the listening socket."""
        server, thread = self._server, self._thread
        self._server = None
        self._thread = None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join()

    def __enter__(self) -> "CNIServer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()


__all__ = [
    "CNI_SERVER_CONFIG_FILE_NAME",
    "CNI_SERVER_CONFIG_FILE_PATH",
    "CNI_SERVER_RUN_DIR",
    "CNI_SERVER_SOCKET_NAME",
    "CNI_SERVER_SOCKET_PATH",
    "CNICommand",
    "CNIRequest",
    "CNIServer",
    "CNIServerError",
    "Config",
    "PodRequest",
    "gather_cni_args",
    "pod_request_from_json",
    "read_config",
]

_ = asdict  # dataclass helpers are part of the public data model