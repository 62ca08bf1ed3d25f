#!/usr/bin/env python3
"""Reset or set the wg-easy web UI password.

This script must be run as root. It rewrites PASSWORD (or, with
--hash-password, a bcrypt PASSWORD_HASH) in the .env file of the install
directory and recreates the container if it is running.

Usage:
    sudo python3 scripts/reset-password.py                       # random password
    sudo python3 scripts/reset-password.py NewPassword           # explicit password
    sudo python3 scripts/reset-password.py --dir /opt/wg-easy --hash-password

It adjusts sys.path so it can be launched from any directory.
"""

import sys

import pathlib

# Ensure project root (parent of this file's directory) is on sys.path so that
# 'import wgeasy' works even when invoking the script directly.
ROOT_DIR = pathlib.Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from wgeasy import main


if __name__ == "__main__":
    sys.exit(main(["password"] + sys.argv[1:]))
