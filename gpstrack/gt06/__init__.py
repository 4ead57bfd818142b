"""GT06 and GK310 tracker protocol: framing, payload parsing and device sessions."""