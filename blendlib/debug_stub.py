"""
DebugConsole - diagnostics sink for the blend parser, silent unless enabled
"""
import sys


class DebugConsole:
    enabled = False
    stream = None

    @classmethod
    def enable(cls, stream=None):
        """Start echoing debug messages (stderr unless a stream is given)"""
        cls.enabled = True
        cls.stream = stream

    @classmethod
    def disable(cls):
        cls.enabled = False
        cls.stream = None

    @classmethod
    def log(cls, message):
        """Print debug message"""
        if not cls.enabled:
            return
        print(message, file=cls.stream or sys.stderr)
