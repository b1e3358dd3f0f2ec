"""
Shared helpers: exceptions, the engine error decorator, result-layout
constants, and DataFrame/JSON persistence.

Enables pandas Copy-on-Write globally so engines can slice the validated
dataset without defensive copies.
"""

import pandas as pd

pd.options.mode.copy_on_write = True
