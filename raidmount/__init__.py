"""
raidmount: assemble disk image files into a software RAID array, mount it,
and leave behind a self-deleting teardown script.
"""

__version__ = "0.1.0"
