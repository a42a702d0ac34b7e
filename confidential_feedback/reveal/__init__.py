"""Asynchronous reveal of aggregate results through a decryption oracle."""
