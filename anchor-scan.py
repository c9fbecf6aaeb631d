#!/usr/bin/env python3
#
# anchor-scan - BLE anchor that runs server-issued beacon scan jobs
#

"""Run the anchor daemon from a source checkout: ./anchor-scan.py --help"""

from anchor_scan.cli import main

if __name__ == "__main__":
    main()
