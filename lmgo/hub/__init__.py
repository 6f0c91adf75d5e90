"""Process supervision: ports, polling, child processes and the supervisor."""
