"""Core type definitions in `ednafit`."""

from collections.abc import Callable

import numpy as np
from numpy.typing import NDArray

# Array types
ArrayF = NDArray[np.float64]  # Generic float64 array
ArrayI = NDArray[np.intp]  # Index arrays (plates, time slices)
ArrayMask = NDArray[np.bool_]

# Dictionary types
ArrayDict = dict[str, ArrayF]  # Parameter blocks keyed by name

# Callable types
Statistic = Callable[[ArrayF], ArrayF]  # Column-wise summary of a response matrix
