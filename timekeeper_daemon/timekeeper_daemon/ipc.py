"""
IPC server of the Timekeeper daemon.

Wire format: 4-byte big-endian length, then a UTF-8 message
``<command> <json object>``; the response is framed the same way and is
always a JSON object.
"""

import asyncio
import grp
import json
import os
import socket
import struct

from timekeeper_daemon.logging import get_logger
from timekeeper_daemon.results import PersistenceError, TimerResult
from timekeeper_daemon.service import TimerService

logger = get_logger("IPCServer")


class IPCArgumentError(Exception):
    """A command was called with missing or malformed arguments."""

    pass


def _require_int(args: dict, key: str) -> int:
    value = args.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise IPCArgumentError(f"'{key}' must be an integer")
    return value


class TimekeeperIPCServer:
    """
    Unix socket front end for the timer operations. Only root and members of
    ipc_admin_group can connect, which makes every caller trusted, including
    for run_maintenance_sweep.
    """

    MAX_REQUEST_SIZE = 64 * 1024

    def __init__(self, config, service: TimerService):
        """
        Args:
            config: Configuration (Config or dict)
            service (TimerService): The daemon's timer service.
        """
        self.config = config
        self.service = service
        self.socket_path = self.config.get("ipc_socket", "/run/timekeeper-daemon.sock")
        self.admin_group = self.config.get("ipc_admin_group")
        self.admin_gid = None
        if self.admin_group:
            try:
                self.admin_gid = grp.getgrnam(self.admin_group).gr_gid
            except KeyError:
                logger.error(
                    f"Admin group '{self.admin_group}' not found. IPC will only be available to root."
                )

        self.server = None
        self.handlers = {
            "start_timer": self.handle_start_timer,
            "stop_timer": self.handle_stop_timer,
            "toggle_pause": self.handle_toggle_pause,
            "get_user_timers": self.handle_get_user_timers,
            "run_maintenance_sweep": self.handle_run_maintenance_sweep,
            "create_timer": self.handle_create_timer,
            "update_timer": self.handle_update_timer,
            "delete_timer": self.handle_delete_timer,
            "grant_bonus": self.handle_grant_bonus,
            "list_timers": self.handle_list_timers,
            "timer_logs": self.handle_timer_logs,
            "describe_commands": self.handle_describe_commands,
        }

    async def start(self):
        """
        Starts the IPC server.
        """
        if os.path.exists(self.socket_path):
            logger.debug(f"Removing existing socket file: {self.socket_path}")
            os.remove(self.socket_path)

        self.server = await asyncio.start_unix_server(
            self.handle_connection, path=self.socket_path
        )

        if self.admin_gid is not None:
            os.chown(self.socket_path, -1, self.admin_gid)
            os.chmod(self.socket_path, 0o660)
        else:
            os.chmod(self.socket_path, 0o600)

        logger.info(f"IPC server started on {self.socket_path}")

    async def stop(self):
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
            self.server = None
        if os.path.exists(self.socket_path):
            os.remove(self.socket_path)

    @staticmethod
    def _peer_credentials(writer):
        """Returns (uid, gid) of the connected process, or None if unavailable."""
        sock = writer.get_extra_info("socket")
        if sock is None or not hasattr(socket, "SO_PEERCRED"):
            return None
        creds = sock.getsockopt(socket.SOL_SOCKET, socket.SO_PEERCRED, struct.calcsize("3i"))
        _, uid, gid = struct.unpack("3i", creds)
        return uid, gid

    def _authorized(self, writer) -> bool:
        try:
            peer_creds = self._peer_credentials(writer)
        except OSError as e:
            logger.warning(f"Could not read peer credentials: {e}")
            return False
        if peer_creds is None:
            # Socket file mode still limits access to root and the admin group
            logger.warning("Peer credentials not supported on this platform.")
            return True
        peer_uid, peer_gid = peer_creds
        if peer_uid in (0, os.getuid()):
            return True
        if self.admin_gid is not None and peer_gid == self.admin_gid:
            return True
        logger.warning(f"Unauthorized IPC connection from UID={peer_uid}, GID={peer_gid}. Closing.")
        return False

    @staticmethod
    async def _write(writer, response: str):
        data = response.encode()
        writer.write(len(data).to_bytes(4, "big"))
        writer.write(data)
        await writer.drain()

    async def handle_connection(self, reader, writer):
        """
        Handles an incoming client connection: one command, one response.
        """
        try:
            if not self._authorized(writer):
                return
            len_data = await reader.readexactly(4)
            msg_len = int.from_bytes(len_data, "big")
            if msg_len > self.MAX_REQUEST_SIZE:
                logger.warning(f"Rejected IPC request of {msg_len} bytes")
                await self._write(writer, json.dumps({"error": "Request too large"}))
                return
            data = await reader.readexactly(msg_len)
            response = await self.dispatch(data.decode())
            await self._write(writer, response)
        except asyncio.IncompleteReadError:
            logger.warning("Client closed connection before sending full message.")
        except Exception as e:
            logger.error(f"Error in IPC connection handler: {e}")
        finally:
            writer.close()
            await writer.wait_closed()

    async def dispatch(self, message: str) -> str:
        """
        Runs one command message and returns the JSON response text.
        Never raises.
        """
        message = message.strip()
        logger.debug(f"Received IPC command: {message}")
        cmd, _, raw_args = message.partition(" ")
        handler = self.handlers.get(cmd)
        if handler is None:
            logger.warning(f"Unknown IPC command: {cmd}")
            return json.dumps({"error": "Unknown command"})

        try:
            args = json.loads(raw_args) if raw_args.strip() else {}
            if not isinstance(args, dict):
                raise IPCArgumentError("arguments must be a JSON object")
            response = await handler(args)
        except (json.JSONDecodeError, IPCArgumentError) as e:
            logger.warning(f"Bad arguments for '{cmd}': {e}")
            response = {"error": f"invalid arguments: {e}"}
        except PersistenceError as e:
            logger.warning(f"Storage unavailable for '{cmd}': {e}")
            response = {"error": "storage unavailable, try again", "retryable": True}
        except Exception as e:
            logger.error(f"Error handling command '{cmd}': {e}", exc_info=True)
            response = {"error": str(e)}
        return json.dumps(response)

    @staticmethod
    def _result(result: TimerResult) -> dict:
        return result.to_dict()

    async def handle_start_timer(self, args):
        """Start a timer. Args: timer_id, user_id"""
        result = await self.service.start_timer(
            _require_int(args, "timer_id"), _require_int(args, "user_id")
        )
        return self._result(result)

    async def handle_stop_timer(self, args):
        """Stop a running timer. Args: timer_id, user_id"""
        result = await self.service.stop_timer(
            _require_int(args, "timer_id"), _require_int(args, "user_id")
        )
        return self._result(result)

    async def handle_toggle_pause(self, args):
        """Pause or resume a timer. Args: timer_id, user_id"""
        result = await self.service.toggle_pause(
            _require_int(args, "timer_id"), _require_int(args, "user_id")
        )
        return self._result(result)

    async def handle_get_user_timers(self, args):
        """Today's timers of a user. Args: user_id"""
        views = await self.service.get_user_timers(_require_int(args, "user_id"))
        return {"timers": [view.to_dict() for view in views]}

    async def handle_run_maintenance_sweep(self, _):
        """Run one maintenance sweep now."""
        report = await self.service.run_maintenance_sweep()
        return report.to_dict()

    async def handle_create_timer(self, args):
        """Create a timer. Args: admin_id, user_id, name, category, weekday_minutes, weekend_minutes"""
        result = await self.service.create_timer(
            _require_int(args, "admin_id"),
            _require_int(args, "user_id"),
            args.get("name"),
            args.get("category"),
            args.get("weekday_minutes"),
            args.get("weekend_minutes"),
        )
        return self._result(result)

    async def handle_update_timer(self, args):
        """Update a timer. Args: admin_id, timer_id, name, category, weekday_minutes, weekend_minutes"""
        result = await self.service.update_timer(
            _require_int(args, "admin_id"),
            _require_int(args, "timer_id"),
            args.get("name"),
            args.get("category"),
            args.get("weekday_minutes"),
            args.get("weekend_minutes"),
        )
        return self._result(result)

    async def handle_delete_timer(self, args):
        """Deactivate a timer. Args: admin_id, timer_id"""
        result = await self.service.delete_timer(
            _require_int(args, "admin_id"), _require_int(args, "timer_id")
        )
        return self._result(result)

    async def handle_grant_bonus(self, args):
        """Grant bonus minutes for today. Args: admin_id, timer_id, minutes"""
        result = await self.service.grant_bonus(
            _require_int(args, "admin_id"),
            _require_int(args, "timer_id"),
            args.get("minutes"),
        )
        return self._result(result)

    async def handle_list_timers(self, args):
        """All active timers with today's usage. Args: user_id (optional)"""
        user_id = _require_int(args, "user_id") if "user_id" in args else None
        views = await self.service.list_timers(user_id)
        return {"timers": [view.to_dict() for view in views]}

    async def handle_timer_logs(self, args):
        """Audit log of a timer. Args: timer_id, limit (optional)"""
        limit = _require_int(args, "limit") if "limit" in args else 50
        logs = await self.service.timer_logs(_require_int(args, "timer_id"), limit)
        return {"logs": logs}

    async def handle_describe_commands(self, _):
        """List the available commands with their descriptions."""
        return {
            name: {"description": (handler.__doc__ or "").strip()}
            for name, handler in self.handlers.items()
        }
