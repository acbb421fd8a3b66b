from .expiry_sweep import run_expiry_sweep, start_expiry_sweep_job

__all__ = ['run_expiry_sweep', 'start_expiry_sweep_job']
