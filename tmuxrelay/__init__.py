"""tmux-relay: stream an assistant's tmux session to a chat surface."""

__version__ = "0.1.0"
