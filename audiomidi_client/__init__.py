"""Audio-to-MIDI client: task lifecycle controller for a remote converter.

WHY: The conversion server works asynchronously. A client has to upload
audio, remember the task ID, poll until the job finishes, tell transient
failures from real ones, and then download the MIDI file. This package
turns that sequence into one resumable, observable workflow.

HOW: Four layers: transport (api/), lifecycle core (core/), configuration
(config.py), and a reference presentation layer (cli.py). The core never
touches the UI; it publishes events on a channel instead.

RULES:
- All HTTP calls go through AudioMidiClient
- One active task controller per Session
- Errors are typed (errors.py) and never swallowed
"""

__version__ = "0.1.0"
