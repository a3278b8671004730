"""Review job pipeline: durable queue, worker, orchestrator and analyzers.

Why not Celery / RQ / Bull?
~~~~~~~~~~~~~~~~~~~~~~~~~~~
The queue here needs very little: leased delivery with a visibility timeout,
capped exponential retry, and stats an operator can read from the same SQLite
file that holds the job records and reports. A broker process would be an
extra operational dependency for a single-machine tool, while the stage
machine, analyzer fan-out and failure classification would still be custom
code inside the broker's task.

Flow: `ReviewService.enqueue_job` -> `JobQueue.lease` -> `ReviewWorker`
(metadata, clone, enumerate, analyze, aggregate, persist) -> `JobQueue.ack`
or `JobQueue.fail_retry`.
"""
