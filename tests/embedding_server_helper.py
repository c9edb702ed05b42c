"""Runs the real embedding server process with the hashing provider."""

import sys

from fakes import FakeProvider
from memory_engine.embedding.server import main

if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:], provider_factory=lambda model, dims: FakeProvider(dims)))
