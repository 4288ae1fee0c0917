import os

# Where SocketIOTransport finds the rendezvous/relay service (app.py).
RENDEZVOUS_URL = os.environ.get('UTTT_RENDEZVOUS_URL', 'http://localhost:5000')

# Fixed delay before re-dialling a host that is not reachable yet.
DIAL_BACKOFF = float(os.environ.get('UTTT_DIAL_BACKOFF', '1.5'))

# How long the rendezvous server keeps a dropped participant's id and channels.
RECONNECT_GRACE = float(os.environ.get('UTTT_RECONNECT_GRACE', '10'))

LOG_LEVEL = os.environ.get('UTTT_LOG_LEVEL', 'INFO').upper()
