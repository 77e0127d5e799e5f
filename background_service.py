#!/usr/bin/env python3
"""
Background Service for the check-in engine
Runs the daily sweep as a daemon
"""

import sys
import os
import time
import signal
import logging
import subprocess

import schedule

from checkin_system import CheckinSystem, setup_logging

logger = logging.getLogger(__name__)

DAEMON_LOG = '/tmp/checkin_daemon.log'


class CheckinDaemon:
    """Background daemon service running scheduled sweeps"""

    def __init__(self, pidfile='/tmp/checkin_sweep.pid', config_file='config.json'):
        self.pidfile = pidfile
        self.config_file = config_file

    @staticmethod
    def _detach(step):
        try:
            if os.fork() > 0:
                sys.exit(0)
        except OSError as e:
            sys.stderr.write(f"Fork #{step} failed: {e}\n")
            sys.exit(1)

    @staticmethod
    def _redirect_streams():
        sys.stdout.flush()
        sys.stderr.flush()
        with open('/dev/null', 'r') as devnull:
            os.dup2(devnull.fileno(), sys.stdin.fileno())
        with open(DAEMON_LOG, 'a+') as log:
            os.dup2(log.fileno(), sys.stdout.fileno())
            os.dup2(log.fileno(), sys.stderr.fileno())

    def daemonize(self):
        """Double-fork into a session leader and record the pid"""
        self._detach(1)
        os.chdir("/")
        os.setsid()
        os.umask(0)
        self._detach(2)

        self._redirect_streams()
        with open(self.pidfile, 'w') as f:
            f.write(f"{os.getpid()}\n")

        signal.signal(signal.SIGTERM, self.signal_handler)
        signal.signal(signal.SIGINT, self.signal_handler)

    def signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, stopping sweep daemon")
        self.cleanup()
        sys.exit(0)

    def cleanup(self):
        try:
            os.remove(self.pidfile)
        except FileNotFoundError:
            pass

    def read_pid(self):
        try:
            with open(self.pidfile, 'r') as f:
                return int(f.read().strip())
        except (FileNotFoundError, ValueError):
            return None

    @staticmethod
    def is_alive(pid) -> bool:
        try:
            os.kill(pid, 0)
        except OSError:
            return False
        return True

    def running_pid(self):
        """Pid of a live daemon; a stale pidfile is removed"""
        pid = self.read_pid()
        if pid is not None and not self.is_alive(pid):
            self.cleanup()
            return None
        return pid

    def start(self):
        if self.running_pid() is not None:
            print("Sweep daemon already running")
            return

        # Resolve before daemonize() changes directory
        self.config_file = os.path.abspath(self.config_file)
        print("Starting check-in sweep daemon...")
        self.daemonize()
        self.run_daemon()

    def stop(self):
        pid = self.running_pid()
        if pid is None:
            print("Sweep daemon not running")
            return

        try:
            os.kill(pid, signal.SIGTERM)
            time.sleep(1)
            if self.is_alive(pid):
                os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

        self.cleanup()
        print("Check-in sweep daemon stopped.")

    def restart(self):
        self.stop()
        time.sleep(2)
        self.start()

    def status(self):
        pid = self.running_pid()
        if pid is None:
            print("Sweep daemon is not running")
            return False
        print(f"Sweep daemon is running (PID: {pid})")
        return True

    def run_once(self, system=None):
        """Run a single sweep and return its counters"""
        system = system or CheckinSystem.from_file(self.config_file)
        result = system.run_sweep()
        logger.info(f"Sweep finished: {result.to_dict()}")
        return result

    def run_daemon(self):
        """Main daemon loop"""
        setup_logging(DAEMON_LOG)

        try:
            system = CheckinSystem.from_file(self.config_file)
        except Exception as e:
            logger.error(f"Failed to start daemon: {e}")
            sys.exit(1)

        sweep_time = system.config.get('sweep_time', '02:00')
        schedule.every().day.at(sweep_time).do(self.run_once, system)
        logger.info(f"Check-in sweep daemon started, daily sweep at {sweep_time}")

        while True:
            try:
                schedule.run_pending()
                time.sleep(60)
            except Exception as e:
                logger.error(f"Error in sweep cycle: {e}")
                time.sleep(300)  # Wait 5 minutes before retry


def install_systemd_service():
    """Install as systemd service on Linux"""
    service_content = f"""[Unit]
Description=Heritage check-in sweep
After=network.target

[Service]
Type=forking
User={os.getenv('USER', 'root')}
WorkingDirectory={os.getcwd()}
ExecStart={sys.executable} {os.path.abspath(__file__)} start
ExecStop={sys.executable} {os.path.abspath(__file__)} stop
PIDFile=/tmp/checkin_sweep.pid
Restart=always
RestartSec=10

[Install]
WantedBy=multi-user.target
"""

    service_path = '/etc/systemd/system/checkin-sweep.service'
    try:
        with open(service_path, 'w') as f:
            f.write(service_content)

        subprocess.run(['sudo', 'systemctl', 'daemon-reload'], check=True)
        subprocess.run(['sudo', 'systemctl', 'enable', 'checkin-sweep'], check=True)
        subprocess.run(['sudo', 'systemctl', 'start', 'checkin-sweep'], check=True)

        print("Systemd service installed and started!")
        print("Use: sudo systemctl status checkin-sweep")

    except (OSError, subprocess.CalledProcessError) as e:
        print(f"Failed to install systemd service: {e}")


USAGE = "Usage: python background_service.py {start|stop|restart|status|run-once|install-systemd}"


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 1:
        print(USAGE)
        return 1

    daemon = CheckinDaemon(config_file=os.environ.get('CHECKIN_CONFIG', 'config.json'))
    command = argv[0]

    if command == 'start':
        daemon.start()
    elif command == 'stop':
        daemon.stop()
    elif command == 'restart':
        daemon.restart()
    elif command == 'status':
        daemon.status()
    elif command == 'run-once':
        setup_logging()
        daemon.run_once()
    elif command == 'install-systemd':
        install_systemd_service()
    else:
        print(USAGE)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
