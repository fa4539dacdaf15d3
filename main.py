#!/usr/bin/env python3

from bitcoin_handshake.main import run

if __name__ == "__main__":
    run()
