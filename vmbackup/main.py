#!/usr/bin/env python3
"""
Main entry point for the VM backup system
"""
import sys
import os

# Make the package importable when this file is run directly
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

if __name__ == "__main__":
    from vmbackup.cli import app
    app(prog_name="vmbackup")
