# core/events.py — canonical event type definitions
# Engine components announce lifecycle changes using these constants as event_type values.

# Printer events
PRINTER_CONNECTED = "printer.connected"               # {address}
PRINTER_DISCONNECTED = "printer.disconnected"         # {address, reason}
PRINTER_RECONNECTING = "printer.reconnecting"         # {address, attempt}
PRINTER_STATE_CHANGED = "printer.state_changed"       # {status, revision}

# Command events
COMMAND_SENT = "command.sent"                         # {cmd, request_id}
COMMAND_RESOLVED = "command.resolved"                 # {cmd, request_id, outcome, error_code}

# Frame events
FRAME_MALFORMED = "frame.malformed"                   # {reason}
