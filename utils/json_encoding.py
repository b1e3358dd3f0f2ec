import json
import numpy as np

class NumpyEncoder(json.JSONEncoder):
    """
    Helper to serialize NumPy types in metadata JSONs.
    Prevents 'Object of type int64 is not JSON serializable' errors.
    """
    def default(self, obj):
        if isinstance(obj, np.integer):
            return int(obj)
        elif isinstance(obj, np.floating):
            return float(obj)
        elif isinstance(obj, np.ndarray):
            return obj.tolist()
        return json.JSONEncoder.default(self, obj)
