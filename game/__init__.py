"""Ultimate tic-tac-toe engine and the peer protocol that keeps two copies of it in step."""
