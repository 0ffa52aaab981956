"""
CardScan - Payment Card Frame Scanner

Crops live video frames to a card-shaped region of interest, prepares them
for text recognition and aggregates the recognized fields into one record
per card number.
"""

__version__ = "0.1.0"
