"""Task lifecycle core: state machine, poll scheduler, resolver, session.

WHY: This is the part of the client with real state and failure
handling. Everything here is UI-agnostic and network-agnostic; it talks
to the server only through the TaskTransport protocol and to the user
only through the EventChannel.

HOW: task.py defines the entity, state_machine.py mutates it,
scheduler.py drives polling, resolver.py turns outcomes into caller
values, session.py coordinates one active task at a time. clock.py and
events.py are the injectable seams.

RULES:
- Only TaskStateMachine mutates a Task
- Time comes from the injected Clock, never time.time() directly
- No HTTP library imports in this package
"""
