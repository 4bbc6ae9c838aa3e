# In-memory process bookkeeping for a single sbenv invocation.
# Persistent state lives in the registry; this only remembers what the OS told
# us while this process was alive (exit codes of children we reaped).

class ProcessState:
    """
    Exit codes of daemon processes reaped by this invocation.
    Once a child is reaped the OS forgets its status, so keep it here.
    """
    _exit_codes = {}

    @classmethod
    def record_exit(cls, pid: int, exit_code: int):
        cls._exit_codes[pid] = exit_code

    @classmethod
    def get_exit(cls, pid: int):
        return cls._exit_codes.get(pid)

    @classmethod
    def remove(cls, pid: int):
        if pid in cls._exit_codes:
            del cls._exit_codes[pid]
