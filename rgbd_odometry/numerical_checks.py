#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Numerical Validation and Tripwire Module
=========================================

Catches NaN/inf in the odometry output and checks the information matrix
before a result is reported as successful.
"""

import numpy as np


def assert_finite(name, M, extra_info=None, raise_on_fail=False):
    """
    Tripwire: Check matrix/vector for inf/nan and dump diagnostics if found.

    Parameters:
    -----------
    name : str
        Descriptive name of the quantity being checked
    M : np.ndarray
        Matrix or vector to validate
    extra_info : dict, optional
        Additional diagnostic information to dump
    raise_on_fail : bool
        If True, raises ValueError on failure. If False, only prints warning.

    Returns:
    --------
    bool : True if finite, False if inf/nan detected
    """
    if M is None:
        print(f"[TRIPWIRE] {name}: is None!")
        return False

    M = np.asarray(M)
    if np.all(np.isfinite(M)):
        return True

    print(f"\n{'='*70}")
    print(f"[TRIPWIRE] NaN/inf DETECTED in {name}")
    print(f"{'='*70}")
    print(f"Matrix shape: {M.shape}")
    print(f"Has NaN: {np.any(np.isnan(M))}")
    print(f"Has inf: {np.any(np.isinf(M))}")
    if M.size <= 100:
        print(f"\nFull matrix:\n{M}")
    else:
        nan_locs = np.argwhere(~np.isfinite(M))
        print(f"\nNon-finite locations (first 10): {nan_locs[:10].tolist()}")

    if extra_info:
        print(f"\nAdditional context:")
        for key, val in extra_info.items():
            if isinstance(val, np.ndarray) and val.size > 10:
                print(f"  {key}: shape={val.shape}, norm={np.linalg.norm(val):.6e}")
            else:
                print(f"  {key}: {val}")
    print(f"{'='*70}\n")

    if raise_on_fail:
        raise ValueError(f"NaN/inf detected in {name}")
    return False


def check_information_psd(info, name="information", tol=1e-9, verbose=False):
    """
    Validate an information matrix is symmetric positive semi-definite.

    Parameters:
    -----------
    info : np.ndarray
        6x6 information matrix
    tol : float
        Allowed negative eigenvalue, relative to the largest eigenvalue

    Returns:
    --------
    is_valid : bool
    """
    if not assert_finite(name, info):
        return False

    scale = max(float(np.max(np.abs(info))), 1.0)
    if not np.allclose(info, info.T, rtol=1e-9, atol=1e-12 * scale):
        if verbose:
            asymmetry = np.max(np.abs(info - info.T))
            print(f"[TRIPWIRE] {name}: not symmetric (max diff={asymmetry:.6e})")
        return False

    try:
        eigvals = np.linalg.eigvalsh(info)
    except np.linalg.LinAlgError:
        print(f"[TRIPWIRE] {name}: eigenvalue computation failed")
        return False

    min_eig, max_eig = eigvals[0], eigvals[-1]
    if min_eig < -tol * max(abs(max_eig), 1.0):
        if verbose:
            print(f"[TRIPWIRE] {name}: negative eigenvalue ({min_eig:.6e})")
        return False
    return True
