"""Framed JSON tracker protocol: frames, messages and device sessions."""