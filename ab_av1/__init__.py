"""
ab-av1 - automatic CRF selection driven by sample encodes and VMAF/XPSNR scoring.
"""

__version__ = "0.9.0"

# Import configuration utilities
from .config import get_config, load_env_file, user_cache_dir


def get_search_functions():
    """Get search entry points (imported on-demand)."""
    from .core.modules.optimization.crf_search import CrfSearchArgs, run as crf_search
    from .core.modules.optimization.sample_encode import SampleEncodeArgs, run as sample_encode

    return {
        'CrfSearchArgs': CrfSearchArgs,
        'crf_search': crf_search,
        'SampleEncodeArgs': SampleEncodeArgs,
        'sample_encode': sample_encode,
    }


__all__ = [
    "get_config",
    "load_env_file",
    "user_cache_dir",
    "get_search_functions",
]
