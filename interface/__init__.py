"""
Interface package: the UCI protocol as seen from the GUI side.

Modules:
    uci: builds the command lines sent to the engine
    matcher: correlates engine output lines with commands awaiting replies
    parser: reduces one search's raw output to a structured result
"""
