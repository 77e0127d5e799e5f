#!/usr/bin/env python3
"""
Heritage Check-in - liveness check-in and escalation engine
Wires the record store, directories, dispatcher, tracker, trigger and sweep
together from one JSON configuration file.
"""

import argparse
import json
import logging
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional

import schedule

from checkin_models import (
    CHECKIN_INTERVAL_MONTHS, DEFAULT_GRACE_PERIOD_DAYS, DEFAULT_MAX_REMINDERS,
    CheckinError, ConfigError, EscalationPolicy, LivenessRecord, NotificationRecord,
    SweepResult, utcnow,
)
from checkin_store import CheckinStore
from contact_directory import ConfigDirectory
from inheritance_trigger import InheritanceTrigger
from liveness_tracker import LivenessTracker
from notification_dispatcher import AuditedNotifier, Dispatcher, NotificationDispatcher
from schedule_evaluator import ScheduleEvaluator

logger = logging.getLogger(__name__)

REQUIRED_KEYS = ['db_path', 'providers', 'directory']

SAMPLE_CONFIG = {
    "db_path": "checkin.db",
    "log_file": "checkin.log",
    "sweep_time": "02:00",
    "sweep_workers": 1,
    "checkin_interval_months": CHECKIN_INTERVAL_MONTHS,
    "defaults": {
        "max_reminders": DEFAULT_MAX_REMINDERS,
        "grace_period_days": DEFAULT_GRACE_PERIOD_DAYS
    },
    "providers": {
        "sender": "noreply@example.com",
        "password": "your_app_password",
        "smtp_server": "smtp.gmail.com",
        "smtp_port": 587,
        "twilio_sid": "your_twilio_sid",
        "twilio_token": "your_twilio_token",
        "twilio_phone": "+1234567890"
    },
    "directory": {
        "user-1": {
            "owner": {"id": "user-1", "name": "Account Holder", "email": "holder@example.com"},
            "family": [
                {"id": "c-1", "name": "Jane Doe", "email": "jane@example.com",
                 "relationship": "spouse", "phone": "+1234567890"}
            ],
            "professional": [
                {"id": "p-1", "name": "Sam Counsel", "email": "sam@lawfirm.example",
                 "relationship": "attorney"}
            ],
            "assets": [
                {"id": "a-1", "beneficiaries": ["c-1"]}
            ]
        }
    }
}


def setup_logging(log_file: Optional[str] = 'checkin.log', level=logging.INFO):
    """Configure logging once for an entry point"""
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.insert(0, logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def load_config(config_file: str) -> Dict:
    """Load configuration from JSON file"""
    try:
        with open(config_file, 'r') as f:
            config = json.load(f)
    except FileNotFoundError:
        logger.error(f"Config file {config_file} not found")
        create_sample_config(config_file)
        raise

    missing = [key for key in REQUIRED_KEYS if key not in config]
    if missing:
        raise ConfigError(f"Missing required config key(s): {', '.join(missing)}")
    return config


def create_sample_config(config_file: str):
    """Create a sample configuration file"""
    with open(config_file, 'w') as f:
        json.dump(SAMPLE_CONFIG, f, indent=2)
    logger.info(f"Sample config created at {config_file}")


class CheckinSystem:
    """Exposed operations of the check-in engine"""

    def __init__(self, config: Dict, dispatcher: Optional[Dispatcher] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.config = config
        self.clock = clock
        defaults = config.get('defaults', {})
        self.max_reminders = defaults.get('max_reminders', DEFAULT_MAX_REMINDERS)
        self.grace_period_days = defaults.get('grace_period_days', DEFAULT_GRACE_PERIOD_DAYS)

        self.store = CheckinStore(config['db_path'])
        self.directory = ConfigDirectory(config['directory'])
        self.dispatcher = dispatcher or NotificationDispatcher(config['providers'])
        self.notifier = AuditedNotifier(self.dispatcher, self.store)
        self.tracker = LivenessTracker(
            self.store, self.directory, clock=clock,
            interval_months=config.get('checkin_interval_months', CHECKIN_INTERVAL_MONTHS),
        )
        self.trigger = InheritanceTrigger(self.store, self.directory, self.directory, self.notifier)
        self.evaluator = ScheduleEvaluator(
            self.store, self.directory, self.notifier, self.trigger,
            clock=clock, workers=config.get('sweep_workers', 1),
        )

    @classmethod
    def from_file(cls, config_file: str = "config.json", **kwargs) -> 'CheckinSystem':
        return cls(load_config(config_file), **kwargs)

    def initialize_checkin(self, user_id: str, default_policy: Optional[Dict] = None) -> LivenessRecord:
        policy = EscalationPolicy().merged(default_policy or {})
        return self.tracker.initialize(
            user_id, policy,
            max_reminders=self.max_reminders,
            grace_period_days=self.grace_period_days,
        )

    def check_in(self, user_id: str) -> LivenessRecord:
        return self.tracker.check_in(user_id)

    def update_policy(self, user_id: str, partial_policy: Dict) -> LivenessRecord:
        return self.tracker.update_policy(user_id, partial_policy)

    def get_status(self, user_id: str) -> LivenessRecord:
        return self.tracker.get_status(user_id)

    def run_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        return self.evaluator.run_sweep(now)

    def list_notifications(self, user_id: str) -> List[NotificationRecord]:
        return self.tracker.list_notifications(user_id)

    def start_monitoring(self):
        """Run the sweep every day at the configured time"""
        sweep_time = self.config.get('sweep_time', '02:00')
        logger.info(f"Starting check-in monitoring, daily sweep at {sweep_time}")
        schedule.every().day.at(sweep_time).do(self.run_sweep)

        while True:
            schedule.run_pending()
            time.sleep(60)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Liveness check-in and escalation engine")
    parser.add_argument('--config', default='config.json')
    sub = parser.add_subparsers(dest='command', required=True)
    for name in ('init', 'checkin', 'status', 'notifications'):
        cmd = sub.add_parser(name)
        cmd.add_argument('user_id')
    policy_cmd = sub.add_parser('policy')
    policy_cmd.add_argument('user_id')
    policy_cmd.add_argument('changes', help='JSON object with the policy fields to change')
    sub.add_parser('sweep')
    sub.add_parser('monitor')
    args = parser.parse_args(argv)

    config = load_config(args.config)
    setup_logging(config.get('log_file', 'checkin.log'))
    system = CheckinSystem(config)

    try:
        if args.command == 'init':
            output = system.initialize_checkin(args.user_id).to_dict(system.clock())
        elif args.command == 'checkin':
            output = system.check_in(args.user_id).to_dict(system.clock())
        elif args.command == 'status':
            output = system.get_status(args.user_id).to_dict(system.clock())
        elif args.command == 'policy':
            output = system.update_policy(args.user_id, json.loads(args.changes)).to_dict(system.clock())
        elif args.command == 'notifications':
            output = [n.to_dict() for n in system.list_notifications(args.user_id)]
        elif args.command == 'sweep':
            output = system.run_sweep().to_dict()
        else:
            try:
                system.start_monitoring()
            except KeyboardInterrupt:
                logger.info("Monitoring stopped by user")
            return 0
    except CheckinError as e:
        logger.error(str(e))
        print(json.dumps({'error': str(e)}))
        return 1

    print(json.dumps(output, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
