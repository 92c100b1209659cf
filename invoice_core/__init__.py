"""Invoice document-understanding core.

Turns scanned or digitally produced invoice pages into validated,
evidence-backed field values through image variants, zone detection,
budgeted multi-engine OCR, multi-method candidate extraction, consensus
resolution, and confidence calibration.
"""
