"""Process-wide settings for gzfile"""

# Recognized entries of SingletonConfig().debug:
#   "mem"     log process memory after each whole-file rewrite
#   "verify"  read back and compare after each whole-file rewrite
DEBUG_FLAGS = ("mem", "verify")


class SingletonConfig:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(SingletonConfig, cls).__new__(cls)
            cls._instance.debug = []
        return cls._instance

    def set_debug(self, flags):
        unknown = [s for s in flags if s not in DEBUG_FLAGS]
        if unknown:
            raise ValueError(f"Unknown debug flags: {unknown}")
        self.debug = list(flags)
