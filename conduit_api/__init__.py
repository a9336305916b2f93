"""HTTP surface of the Conduit pipeline."""
