"""Goal scheduler: goals -> work items -> runs under budgets.

Why a tick loop over SQLite instead of a workflow engine?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part here is the decision layer around each run, not moving
messages between processes:

- Budget projection before dispatch and overage escalation after it.
- Failure classification feeding an escalating ladder of retry strategies.
- Human escalations that block a goal until they are resolved or dismissed.
- Cascading aborts from goal to work item to run.

A single scheduler process owns dispatch. Every persisted status change is a
compare-and-swap, so an operator CLI in another process can cancel goals or
resolve escalations concurrently and the loop picks the change up on its next
tick.
"""
