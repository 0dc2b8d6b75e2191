"""Contract Alarms - notify on smart-contract events once they are final."""

__version__ = "0.1.0"
