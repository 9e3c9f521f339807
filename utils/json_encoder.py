import json
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
import numpy as np


class NumpyJSONEncoder(json.JSONEncoder):
    """NumPy, Decimal, 날짜, Enum 타입을 JSON 기본 타입으로 변환하는 JSONEncoder"""

    def default(self, obj):
        if isinstance(obj, np.integer):
            return int(obj)
        elif isinstance(obj, np.floating):
            return float(obj)
        elif isinstance(obj, np.ndarray):
            return obj.tolist()
        elif isinstance(obj, Decimal):
            return float(obj)
        elif isinstance(obj, (date, datetime)):
            return obj.isoformat()
        elif isinstance(obj, timedelta):
            # MySQL TIME 컬럼
            minutes = int(obj.total_seconds() // 60)
            return f"{minutes // 60:02d}:{minutes % 60:02d}"
        elif isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


def dumps(obj, **kwargs):
    """NumPy/날짜 안전 JSON 직렬화 함수"""
    kwargs.setdefault('cls', NumpyJSONEncoder)
    kwargs.setdefault('ensure_ascii', False)
    return json.dumps(obj, **kwargs)
