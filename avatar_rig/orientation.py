"""
Quaternion helpers shared by every solver.

Quaternions are numpy arrays in [w, x, y, z] order. scipy's Rotation uses
[x, y, z, w], so conversions go through to_scipy / from_scipy.
"""
import numpy as np
from scipy.spatial.transform import Rotation as R

EPSILON = 1e-8

IDENTITY = np.array([1.0, 0.0, 0.0, 0.0])


def identity():
    return IDENTITY.copy()


def normalize(v):
    norm = np.linalg.norm(v)
    if norm < EPSILON:
        return v
    return v / norm


def to_scipy(q):
    return R.from_quat([q[1], q[2], q[3], q[0]])


def from_scipy(rotation):
    q = rotation.as_quat()
    return np.array([q[3], q[0], q[1], q[2]])


def multiply_quaternions(q1, q2):
    """
    Multiply two quaternions q1 * q2.
    q = [w, x, y, z]
    """
    w1, x1, y1, z1 = q1
    w2, x2, y2, z2 = q2

    w = w1*w2 - x1*x2 - y1*y2 - z1*z2
    x = w1*x2 + x1*w2 + y1*z2 - z1*y2
    y = w1*y2 - x1*z2 + y1*w2 + z1*x2
    z = w1*z2 + x1*y2 - y1*x2 + z1*w2

    return np.array([w, x, y, z])


def invert_quaternion(q):
    """
    Invert a quaternion.
    Assumes unit quaternion, so just conjugate.
    """
    return np.array([q[0], -q[1], -q[2], -q[3]])


def rotate_vector(q, v):
    """Rotate vector v by unit quaternion q."""
    qv = np.array([0.0, v[0], v[1], v[2]])
    return multiply_quaternions(multiply_quaternions(q, qv), invert_quaternion(q))[1:]


def axis_angle_quaternion(axis, angle):
    axis = normalize(np.asarray(axis, dtype=float))
    half = angle / 2
    return np.array([np.cos(half), *(np.sin(half) * axis)])


def rotation_between_vectors(u, v):
    """
    Shortest-arc quaternion that rotates direction u onto direction v.

    Zero-length inputs and near-antiparallel pairs have no stable answer and
    fall back to identity instead of producing NaN.
    """
    u = np.asarray(u, dtype=float)
    v = np.asarray(v, dtype=float)
    if np.linalg.norm(u) < EPSILON or np.linalg.norm(v) < EPSILON:
        return identity()

    u = normalize(u)
    v = normalize(v)
    dot = np.dot(u, v)

    if dot > 1.0 - 1e-9:
        return identity()
    if dot < -1.0 + 1e-6:
        return identity()

    # q_w = |u||v| + u.v, q_xyz = u x v, then normalize
    axis = np.cross(u, v)
    q = np.array([1.0 + dot, axis[0], axis[1], axis[2]])
    return normalize(q)


def to_local(world_quat, parent_world_quat):
    """Rotation to put on a bone so its world orientation becomes world_quat."""
    return multiply_quaternions(invert_quaternion(parent_world_quat), world_quat)


def angle_between_quaternions(q1, q2):
    dot = abs(float(np.dot(normalize(q1), normalize(q2))))
    return 2 * np.arccos(min(1.0, dot))


def slerp(q1, q2, t):
    """Spherical interpolation from q1 toward q2 along the shorter arc."""
    q1 = normalize(np.asarray(q1, dtype=float))
    q2 = normalize(np.asarray(q2, dtype=float))
    dot = np.dot(q1, q2)
    if dot < 0.0:
        q2 = -q2
        dot = -dot

    if dot > 0.9995:
        # Nearly identical: linear blend is accurate and avoids sin(0)
        return normalize(q1 + t * (q2 - q1))

    theta = np.arccos(dot)
    sin_theta = np.sin(theta)
    a = np.sin((1 - t) * theta) / sin_theta
    b = np.sin(t * theta) / sin_theta
    return a * q1 + b * q2


def scale_quaternion_rotation(q, factor):
    """
    Scale the rotation angle of a quaternion by a factor.
    q = [w, x, y, z]
    """
    w = q[0]
    # Clamp w to [-1, 1] to avoid numerical errors
    w = max(-1.0, min(1.0, w))

    theta = 2 * np.arccos(w)

    if abs(np.sin(theta/2)) < 1e-6:
        return identity()

    axis = q[1:] / np.sin(theta/2)
    new_theta = theta * factor

    new_w = np.cos(new_theta/2)
    new_xyz = np.sin(new_theta/2) * axis

    return np.array([new_w, new_xyz[0], new_xyz[1], new_xyz[2]])


def quaternion_from_basis(x_axis, y_axis, z_axis):
    """
    Quaternion of the frame whose local X, Y, Z axes point along the given
    world vectors. Returns None when the basis is degenerate.
    """
    matrix = np.column_stack((x_axis, y_axis, z_axis))

    if not np.all(np.isfinite(matrix)) or abs(np.linalg.det(matrix)) < 1e-6:
        return None

    if np.linalg.det(matrix) < 0:
        # Left-handed input, flip Z to keep a proper rotation
        matrix = np.column_stack((x_axis, y_axis, -np.asarray(z_axis)))

    try:
        return from_scipy(R.from_matrix(matrix))
    except ValueError:
        return None


def constrain_to_hinge(q, axis_index=2):
    """Keep only one Euler component so the joint bends like a hinge."""
    angles = to_scipy(q).as_euler("xyz")
    constrained = np.zeros(3)
    constrained[axis_index] = angles[axis_index]
    return from_scipy(R.from_euler("xyz", constrained))


def euler_quaternion(degrees_xyz):
    return from_scipy(R.from_euler("xyz", degrees_xyz, degrees=True))


def clamp_factor(factor):
    """Slerp factors live in (0, 1]."""
    return min(1.0, max(1e-3, float(factor)))


def apply_bone_rotation(bone, world_quat, parent_world_quat, smoothing_factor=0.2):
    """
    Write a desired world orientation onto a bone as a parent-relative rotation,
    slerped from the bone's current rotation.
    """
    if bone is None or world_quat is None:
        return None

    local_quat = to_local(world_quat, parent_world_quat)
    if not np.all(np.isfinite(local_quat)):
        return None

    bone.rotation = slerp(bone.rotation, local_quat, clamp_factor(smoothing_factor))
    return bone.rotation
