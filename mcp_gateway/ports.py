from __future__ import annotations

import os
import socket


def is_port_free(port: int, host: str = "0.0.0.0") -> bool:
    """Bind-and-release probe: True when nothing is listening on `port`."""

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        if os.name != "nt":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
            sock.listen(1)
        except OSError:
            return False
    return True


def is_port_in_use(port: int, host: str = "0.0.0.0") -> bool:
    return not is_port_free(port, host)
