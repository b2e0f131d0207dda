#!/usr/bin/env python3
"""Run one backup; suitable for a cron entry or systemd timer"""
import sys

from dbkeeper import create_app
from dbkeeper.backup import execute_backup, exit_code_for
from dbkeeper.cli import CONFIG_ERROR_EXIT, install_sigterm_handler
from dbkeeper.config import ConfigError

if __name__ == '__main__':
    app = create_app()
    install_sigterm_handler()

    with app.app_context():
        try:
            report = execute_backup()
        except ConfigError as e:
            print(e, file=sys.stderr)
            sys.exit(CONFIG_ERROR_EXIT)

    sys.exit(exit_code_for(report.status))
