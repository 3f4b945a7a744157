# xdvdrecovery — XDVDFS (Xbox DVD filesystem) directory recovery engine
# Pure-Python sector-level file extraction from damaged disc images.
#
# Architecture (bottom → top):
#   sector_reader  — 2048-byte sector I/O over an image (mmap / plain / pytsk3)
#   directory      — Decode one XDVDFS directory table into entries
#   heuristics     — Suspect-sector and clean-predecessor checks
#   extractor      — Copy one file entry's sectors to an output sink
#   manager        — Orchestrator (offset → sector, list, extract, reports)
