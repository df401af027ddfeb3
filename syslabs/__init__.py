"""Operating-system exercises: FAT32 images, a pipe-based command server and a shared message framework."""

__version__ = "0.1.0"