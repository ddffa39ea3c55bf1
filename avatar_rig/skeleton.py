"""
Collaborator interfaces for the avatar the solvers write into, plus a small
in-memory humanoid used by the demo runner and the tests.

Rotations are local quaternions [w, x, y, z]. World transforms are cached and
only refreshed by Skeleton.update_world(), the way a scene graph keeps its
world matrices until asked to recompute them.
"""
from abc import ABC, abstractmethod

import numpy as np

from avatar_rig.orientation import (
    identity,
    multiply_quaternions,
    normalize,
    rotate_vector,
    invert_quaternion,
)


class Bone(ABC):
    """An externally-owned joint. Solvers only read and write values on it."""

    name = ""

    @property
    @abstractmethod
    def parent(self):
        """Parent bone or None at the root."""

    @property
    @abstractmethod
    def rotation(self):
        """Local rotation [w, x, y, z]."""

    @rotation.setter
    @abstractmethod
    def rotation(self, value):
        pass

    @property
    @abstractmethod
    def position(self):
        """Local position relative to the parent."""

    @position.setter
    @abstractmethod
    def position(self, value):
        pass

    @abstractmethod
    def world_rotation(self):
        pass

    @abstractmethod
    def world_position(self):
        pass

    @property
    @abstractmethod
    def rest_direction(self):
        """Unit direction the bone points along in its rest pose."""

    @property
    @abstractmethod
    def rest_length(self):
        pass

    def parent_world_rotation(self):
        if self.parent is None:
            return identity()
        return self.parent.world_rotation()

    def world_to_parent_space(self, point):
        """Express a world-space point in this bone's parent space."""
        if self.parent is None:
            return np.asarray(point, dtype=float)
        offset = np.asarray(point, dtype=float) - self.parent.world_position()
        return rotate_vector(invert_quaternion(self.parent.world_rotation()), offset)


class Skeleton(ABC):

    @abstractmethod
    def get_bone(self, name):
        """Bone handle for a humanoid bone name, or None when the avatar lacks it."""

    @abstractmethod
    def update_world(self):
        """Recompute cached world transforms after local values changed."""

    def advance(self, delta_time):
        """Hook for engine-side secondary motion. Nothing to do by default."""
        return None


class ExpressionTarget(ABC):

    @abstractmethod
    def channel_names(self):
        pass

    @abstractmethod
    def set_value(self, name, weight):
        pass

    @abstractmethod
    def update(self):
        """Commit all weights set this frame."""


class SkeletonNode(Bone):

    def __init__(self, name, offset, parent=None, rest_length=None):
        self.name = name
        self._parent = parent
        self.children = []
        self.rest_offset = np.asarray(offset, dtype=float)
        self._position = self.rest_offset.copy()
        self._rotation = identity()
        self._explicit_length = rest_length
        self._world_rotation = identity()
        self._world_position = self._position.copy()
        if parent is not None:
            parent.children.append(self)

    @property
    def parent(self):
        return self._parent

    @property
    def rotation(self):
        return self._rotation.copy()

    @rotation.setter
    def rotation(self, value):
        self._rotation = normalize(np.asarray(value, dtype=float))

    @property
    def position(self):
        return self._position.copy()

    @position.setter
    def position(self, value):
        self._position = np.asarray(value, dtype=float)

    def world_rotation(self):
        return self._world_rotation.copy()

    def world_position(self):
        return self._world_position.copy()

    @property
    def rest_direction(self):
        if self.children:
            return normalize(self.children[0].rest_offset)
        return normalize(self.rest_offset)

    @property
    def rest_length(self):
        if self._explicit_length is not None:
            return self._explicit_length
        if self.children:
            return float(np.linalg.norm(self.children[0].rest_offset))
        return float(np.linalg.norm(self.rest_offset))

    def _refresh(self):
        if self._parent is None:
            self._world_rotation = self._rotation.copy()
            self._world_position = self._position.copy()
        else:
            parent_rot = self._parent._world_rotation
            self._world_rotation = multiply_quaternions(parent_rot, self._rotation)
            self._world_position = self._parent._world_position + rotate_vector(parent_rot, self._position)
        for child in self.children:
            child._refresh()


class SimpleSkeleton(Skeleton):
    """Dictionary-backed skeleton with a single root."""

    def __init__(self, root):
        self.root = root
        self.bones = {}
        self._index(root)
        self.update_world()
        self.elapsed = 0.0

    def _index(self, node):
        self.bones[node.name] = node
        for child in node.children:
            self._index(child)

    def get_bone(self, name):
        return self.bones.get(name)

    def update_world(self):
        self.root._refresh()

    def advance(self, delta_time):
        self.elapsed += delta_time


class DictExpressionTarget(ExpressionTarget):

    def __init__(self, names):
        self.values = {name: 0.0 for name in names}
        self.pending = {}
        self.commits = 0

    def channel_names(self):
        return list(self.values.keys())

    def set_value(self, name, weight):
        if name in self.values:
            self.pending[name] = float(weight)

    def update(self):
        self.values.update(self.pending)
        self.pending = {}
        self.commits += 1


# Rest layout of a normalized humanoid (metres). Left side is -X.
HUMANOID_LAYOUT = [
    # name, parent, offset
    ("hips", None, (0.0, 0.95, 0.0)),
    ("spine", "hips", (0.0, 0.08, 0.0)),
    ("chest", "spine", (0.0, 0.12, 0.0)),
    ("upperChest", "chest", (0.0, 0.12, 0.0)),
    ("neck", "upperChest", (0.0, 0.13, 0.0)),
    ("head", "neck", (0.0, 0.08, 0.0)),
    ("leftShoulder", "upperChest", (-0.03, 0.1, 0.0)),
    ("leftUpperArm", "leftShoulder", (-0.09, 0.0, 0.0)),
    ("leftLowerArm", "leftUpperArm", (-0.28, 0.0, 0.0)),
    ("leftHand", "leftLowerArm", (-0.25, 0.0, 0.0)),
    ("rightShoulder", "upperChest", (0.03, 0.1, 0.0)),
    ("rightUpperArm", "rightShoulder", (0.09, 0.0, 0.0)),
    ("rightLowerArm", "rightUpperArm", (0.28, 0.0, 0.0)),
    ("rightHand", "rightLowerArm", (0.25, 0.0, 0.0)),
    ("leftUpperLeg", "hips", (-0.09, -0.05, 0.0)),
    ("leftLowerLeg", "leftUpperLeg", (0.0, -0.42, 0.0)),
    ("leftFoot", "leftLowerLeg", (0.0, -0.40, 0.0)),
    ("rightUpperLeg", "hips", (0.09, -0.05, 0.0)),
    ("rightLowerLeg", "rightUpperLeg", (0.0, -0.42, 0.0)),
    ("rightFoot", "rightLowerLeg", (0.0, -0.40, 0.0)),
]

# Finger offsets for the left hand; the right hand mirrors X.
FINGER_LAYOUT = {
    "Thumb": [("Metacarpal", (-0.02, -0.01, -0.02)), ("Proximal", (-0.03, 0.0, -0.03)), ("Distal", (-0.025, 0.0, -0.025))],
    "Index": [("Proximal", (-0.09, 0.0, -0.025)), ("Intermediate", (-0.04, 0.0, 0.0)), ("Distal", (-0.025, 0.0, 0.0))],
    "Middle": [("Proximal", (-0.09, 0.0, 0.0)), ("Intermediate", (-0.045, 0.0, 0.0)), ("Distal", (-0.028, 0.0, 0.0))],
    "Ring": [("Proximal", (-0.085, 0.0, 0.02)), ("Intermediate", (-0.04, 0.0, 0.0)), ("Distal", (-0.026, 0.0, 0.0))],
    "Little": [("Proximal", (-0.075, 0.0, 0.04)), ("Intermediate", (-0.03, 0.0, 0.0)), ("Distal", (-0.022, 0.0, 0.0))],
}


def build_humanoid(include_fingers=True, omit=()):
    """Build a T-posed humanoid. Bone names listed in omit are left out with their subtrees."""
    nodes = {}
    for name, parent_name, offset in HUMANOID_LAYOUT:
        if name in omit or (parent_name is not None and parent_name not in nodes):
            continue
        nodes[name] = SkeletonNode(name, offset, nodes.get(parent_name))

    if include_fingers:
        for side, sign in (("left", 1.0), ("right", -1.0)):
            hand = nodes.get(f"{side}Hand")
            if hand is None:
                continue
            for finger, segments in FINGER_LAYOUT.items():
                parent = hand
                for i, (segment, offset) in enumerate(segments):
                    name = f"{side}{finger}{segment}"
                    if name in omit:
                        break
                    offset = np.array(offset) * np.array([sign, 1.0, 1.0])
                    # Leaf segments have no child to measure, give them a length
                    length = 0.02 if i == len(segments) - 1 else None
                    parent = SkeletonNode(name, offset, parent, rest_length=length)

    return SimpleSkeleton(nodes["hips"])
