"""Line-based TCP chat server and terminal client with image emotes."""

__version__ = "0.1.0"