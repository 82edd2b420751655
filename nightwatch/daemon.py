"""
Watch mode: periodic sync cycles via APScheduler, plus systemd/schtasks definitions.
"""
import logging
import os
import sys
import threading
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler  # type: ignore

from .config import get_config_dir, get_profile_token, load_profile
from .errors import NightWatchError
from .models import SyncResult
from .orchestrator import SyncOrchestrator
from .utils import setup_signal_handlers

logger = logging.getLogger(__name__)


class WatchDaemon:
    """Runs one sync cycle per interval for a profile until stopped."""

    def __init__(self, profile_name: str, interval_minutes: int):
        self.profile = profile_name
        self.interval = interval_minutes
        self.scheduler = BackgroundScheduler()
        self.pid_file = get_config_dir() / f"watch_{profile_name}.pid"
        self.orchestrator = SyncOrchestrator()
        self.last_result: Optional[SyncResult] = None
        self._stopped = threading.Event()

    def is_running(self) -> bool:
        """Check whether another watcher owns the PID file."""
        if not self.pid_file.exists():
            return False
        try:
            pid = int(self.pid_file.read_text())
            if sys.platform == "win32":
                import ctypes
                kernel32 = ctypes.windll.kernel32
                process = kernel32.OpenProcess(0x1000, 0, pid)
                if process:
                    kernel32.CloseHandle(process)
                    return True
                return False
            os.kill(pid, 0)
            return True
        except (ValueError, OSError):
            self.pid_file.unlink(missing_ok=True)
            return False

    def job(self) -> Optional[SyncResult]:
        """One scheduled sync cycle. Failures are logged; the next tick retries."""
        try:
            profile = load_profile(self.profile)
            config = profile.to_sync_config(get_profile_token(profile))
            result = self.orchestrator.run(config)
        except NightWatchError as e:
            logger.error("Watch cycle for '%s' could not start: %s", self.profile, e)
            return None
        self.last_result = result
        if result.ok:
            logger.info("Watch cycle for '%s' committed generation %s", self.profile, result.install_generation)
        else:
            logger.warning("Watch cycle for '%s' ended %s: %s", self.profile, result.state.value, result.error)
        return result

    def start(self) -> None:
        if self.is_running():
            raise NightWatchError(f"Watcher for profile '{self.profile}' is already running.")

        self.pid_file.write_text(str(os.getpid()))
        self.scheduler.add_job(self.job, "interval", minutes=self.interval, max_instances=1, coalesce=True)
        self.scheduler.start()
        setup_signal_handlers(self.stop)

        # First cycle immediately, then on the interval.
        self.job()
        try:
            while not self._stopped.wait(1.0):
                pass
        finally:
            self.stop()

    def stop(self) -> None:
        self._stopped.set()
        self.orchestrator.cancel()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.pid_file.unlink(missing_ok=True)


def _watch_args(profile_name: str, interval: int) -> str:
    return f"-m nightwatch.cli watch {profile_name} --interval {interval}"

def generate_systemd_unit(profile_name: str, interval: int) -> str:
    """Generate systemd .service content."""
    return f"""[Unit]
Description=Night Watch updater ({profile_name})
After=network-online.target
Wants=network-online.target

[Service]
Type=simple
ExecStart={sys.executable} {_watch_args(profile_name, interval)}
Restart=on-failure
RestartSec=30
SyslogIdentifier=nightwatch-{profile_name}

[Install]
WantedBy=default.target
"""

def generate_windows_task_xml(profile_name: str, interval: int) -> str:
    """Generate an XML definition for Windows Task Scheduler (schtasks.exe)."""
    return f"""<?xml version="1.0" encoding="UTF-16"?>
<Task version="1.2" xmlns="http://schemas.microsoft.com/windows/2004/02/mit/task">
  <RegistrationInfo>
    <Description>Night Watch updater for profile: {profile_name}</Description>
  </RegistrationInfo>
  <Triggers>
    <LogonTrigger>
      <Enabled>true</Enabled>
    </LogonTrigger>
  </Triggers>
  <Principals>
    <Principal>
      <LogonType>InteractiveToken</LogonType>
      <RunLevel>LeastPrivilege</RunLevel>
    </Principal>
  </Principals>
  <Settings>
    <MultipleInstancesPolicy>IgnoreNew</MultipleInstancesPolicy>
    <DisallowStartIfOnBatteries>false</DisallowStartIfOnBatteries>
    <StopIfGoingOnBatteries>false</StopIfGoingOnBatteries>
    <ExecutionTimeLimit>PT0S</ExecutionTimeLimit>
    <Priority>7</Priority>
  </Settings>
  <Actions Context="Author">
    <Exec>
      <Command>{sys.executable}</Command>
      <Arguments>{_watch_args(profile_name, interval)}</Arguments>
    </Exec>
  </Actions>
</Task>"""
