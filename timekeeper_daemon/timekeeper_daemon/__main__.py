import asyncio
import json

from timekeeper_daemon.config import Config, ConfigError
from timekeeper_daemon.ipc import TimekeeperIPCServer
from timekeeper_daemon.logging import get_logger, setup_logging
from timekeeper_daemon.results import PersistenceError
from timekeeper_daemon.service import TimerService

logger = get_logger("TimekeeperDaemon")


class TimekeeperDaemon:
    """
    Main class of the Timekeeper Daemon.
    Initializes the timer service and the IPC server and runs the sweep scheduler.
    """

    def __init__(self, config: Config, service: TimerService = None):
        self.config = config
        self.service = service or TimerService.from_config(self.config)
        self.ipc_server = TimekeeperIPCServer(self.config, self.service)
        self.sweep_interval = self.config.get("sweep_interval_seconds", 300)

    async def periodic_sweep(self):
        """
        Runs the maintenance sweep every sweep_interval_seconds.
        """
        while True:
            try:
                report = await self.service.run_maintenance_sweep()
                if report.errors:
                    logger.warning(f"Maintenance sweep finished with {report.errors} error(s)")
            except Exception as e:
                logger.error(f"Maintenance sweep crashed: {e}", exc_info=True)
            await asyncio.sleep(self.sweep_interval)

    async def run(self):
        """
        Starts all components and tasks of the daemon.
        """
        await self.ipc_server.start()
        logger.info(f"Sweeping every {self.sweep_interval} seconds")
        try:
            await self.periodic_sweep()
        finally:
            await self.ipc_server.stop()
            self.service.close()


def _fallback_log(message, exc_info=False):
    # structlog might not be configured when startup fails
    import logging

    logging.basicConfig()
    logging.getLogger("TimekeeperDaemon").error(message, exc_info=exc_info)


def main():
    """
    Entry Point for the Timekeeper-Daemon.
    """
    try:
        config = Config()
        setup_logging(config)
        daemon = TimekeeperDaemon(config)
        asyncio.run(daemon.run())
    except KeyboardInterrupt:
        logger.info("Timekeeper daemon stopped")
    except ConfigError as e:
        _fallback_log(f"Configuration error: {e}")
        raise SystemExit(1)
    except Exception as e:
        _fallback_log(f"An unexpected error occurred: {e}", exc_info=True)
        raise SystemExit(1)


def sweep_main():
    """
    One-shot maintenance sweep against the database, for cron or a systemd
    timer when the daemon's own scheduler is not used. Prints the report as
    JSON; exits 2 when any session could not be processed.
    """
    try:
        config = Config()
        setup_logging(config)
        service = TimerService.from_config(config)
    except ConfigError as e:
        _fallback_log(f"Configuration error: {e}")
        raise SystemExit(1)
    except PersistenceError as e:
        _fallback_log(f"Database unavailable: {e}")
        raise SystemExit(1)

    try:
        report = asyncio.run(service.run_maintenance_sweep())
    finally:
        service.close()
    print(json.dumps(report.to_dict()))
    if report.errors:
        raise SystemExit(2)


if __name__ == "__main__":
    main()

# Entry point for timekeeper-daemon (systemd service)
