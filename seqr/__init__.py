"""seqr - sequential command runner and lightweight process supervisor.

Runs a declarative list of commands in order. "once" commands run to
completion; "keepAlive" commands are started in the background, tracked on
disk and can be discovered and terminated by a later invocation.
"""

__version__ = "0.1.0"
