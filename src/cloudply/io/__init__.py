"""
PLY Input/Output
================
Tokenizer, parse state machine and header generator, plus the reader and
writer built on top of them.

Note: Everything that touches bytes of a PLY file lives here; the model
layer only ever sees decoded values.
"""
