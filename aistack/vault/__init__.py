"""Encrypted secret storage built on NaCl secretbox."""