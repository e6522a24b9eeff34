"""
xpm - command-line front end for the Xaheen plugin manager.

Installed as the ``xaheen`` console script.
"""
