"""
Rotations that align the z axis with a reference vector (typically B).
All functions broadcast over leading dimensions: vectors are (..., 3) and
matrices / tensors (..., 3, 3).
"""
import numpy as np


def _cross_matrix(k: np.ndarray) -> np.ndarray:
    K = np.zeros(k.shape[:-1] + (3, 3))
    K[..., 0, 1] = -k[..., 2]
    K[..., 0, 2] = k[..., 1]
    K[..., 1, 0] = k[..., 2]
    K[..., 1, 2] = -k[..., 0]
    K[..., 2, 0] = -k[..., 1]
    K[..., 2, 1] = k[..., 0]
    return K


def rotation_matrix(axis, angle) -> np.ndarray:
    """
    Rotation about a unit vector by an angle in radians (Rodrigues' formula).

    Parameters
    ----------
    axis : array-like, shape (..., 3)
        Rotation axis; normalised internally
    angle : float or array-like, shape (...)
        Rotation angle in radians

    Returns
    -------
    np.ndarray
        Rotation matrices, shape (..., 3, 3)
    """
    axis = np.asarray(axis, dtype=float)
    angle = np.asarray(angle, dtype=float)
    norm = np.linalg.norm(axis, axis=-1, keepdims=True)
    if np.any(norm == 0):
        raise ValueError("Rotation axis must be non-zero")
    K = _cross_matrix(axis / norm)
    s = np.sin(angle)[..., None, None]
    c = np.cos(angle)[..., None, None]
    return np.eye(3) + s * K + (1.0 - c) * (K @ K)


def rotation_to_vector(vector) -> np.ndarray:
    """
    Rotation matrix taking the z unit vector onto the direction of ``vector``.

    The columns of the result are two perpendicular unit vectors and the
    unit vector parallel to ``vector`` (third column). A zero vector has no
    direction; its matrix is all NaN.
    """
    vector = np.asarray(vector, dtype=float)
    norm = np.linalg.norm(vector, axis=-1, keepdims=True)
    zero = norm[..., 0] == 0
    v = vector / np.where(zero[..., None], 1.0, norm)

    # Rotation axis z x v; its length is sin(angle)
    k = np.stack([-v[..., 1], v[..., 0], np.zeros(v.shape[:-1])], axis=-1)
    s = np.linalg.norm(k, axis=-1)
    c = v[..., 2]

    safe_s = np.where(s > 0, s, 1.0)
    K = _cross_matrix(k / safe_s[..., None])
    R = np.eye(3) + s[..., None, None] * K + (1.0 - c)[..., None, None] * (K @ K)

    # Parallel or anti-parallel to z: the axis is undefined
    aligned = s == 0
    if np.any(aligned):
        flip = np.diag([1.0, -1.0, -1.0])
        R = np.where(aligned[..., None, None],
                     np.where((c < 0)[..., None, None], flip, np.eye(3)),
                     R)
    if np.any(zero):
        R = np.where(zero[..., None, None], np.nan, R)
    return R


def rotate_tensor_to_vector(tensor, vector) -> np.ndarray:
    """
    Express a rank-2 tensor in the frame whose z axis is along ``vector``.

    Returns ``R^T T R`` with ``R = rotation_to_vector(vector)``.
    """
    tensor = np.asarray(tensor, dtype=float)
    R = rotation_to_vector(vector)
    return np.swapaxes(R, -1, -2) @ tensor @ R


def parallel_perpendicular(vector, reference):
    """
    Components of ``vector`` parallel and perpendicular to ``reference``.

    Returns
    -------
    parallel : np.ndarray
        Signed component along the reference direction
    perpendicular : np.ndarray
        Magnitude of the remaining component
    """
    vector = np.asarray(vector, dtype=float)
    R = rotation_to_vector(reference)
    rotated = np.einsum('...ji,...j->...i', R, vector)
    return rotated[..., 2], np.hypot(rotated[..., 0], rotated[..., 1])


def full_tensor(diagonal, offdiagonal) -> np.ndarray:
    """
    Assemble symmetric 3x3 tensors from diagonal (xx, yy, zz) and
    off-diagonal (yz, xz, xy) components.
    """
    diagonal = np.asarray(diagonal, dtype=float)
    offdiagonal = np.asarray(offdiagonal, dtype=float)
    T = np.zeros(diagonal.shape[:-1] + (3, 3))
    T[..., 0, 0] = diagonal[..., 0]
    T[..., 1, 1] = diagonal[..., 1]
    T[..., 2, 2] = diagonal[..., 2]
    T[..., 1, 2] = T[..., 2, 1] = offdiagonal[..., 0]
    T[..., 0, 2] = T[..., 2, 0] = offdiagonal[..., 1]
    T[..., 0, 1] = T[..., 1, 0] = offdiagonal[..., 2]
    return T
