"""Bridge a 3D printer's MJPEG webcam to YouTube Live."""

__version__ = "0.1.0"
