#!/usr/bin/env python3
"""Development runner"""
import sys
from remotebackup.cli import main

if __name__ == '__main__':
    # Use development config (everything under ./data) for local testing
    sys.exit(main(sys.argv[1:] + ['--config', 'development']))
