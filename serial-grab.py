#!/usr/bin/env python3
"""
serialgrab launcher.

Pulls files off a device whose only interface is a serial console shell:
- one console session at a time, driven over pyserial, a terminal client,
  or a terminal client on an SSH console server
- each file is base64-encoded on the device between delimiter lines
- output is considered complete once it stops changing
"""

import sys

from serialgrab.main import main

if __name__ == "__main__":
    sys.exit(main())
