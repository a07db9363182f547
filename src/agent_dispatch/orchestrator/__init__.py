"""Task orchestrator for isolated, supervised agent workers.

Inbound events are logged, routed and deduplicated into a SQLite-backed task
queue. A single coordinator admits tasks into a bounded number of slots,
materializes a fresh workspace per attempt, supervises the worker process and
validates the result file it leaves behind. Failures are classified and either
retried with backoff or dead-lettered; every step lands in the task event
stream.

Why a local queue and not a broker?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part is the boundary between the queue and an opaque worker process
that talks through files on disk: per-attempt sandboxes, output-contract
validation, failure classification from exit codes and stderr. A broker would
add an operational dependency and still leave all of that to custom code.
"""
