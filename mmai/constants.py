"""
mmai/constants.py

Defines core constants and enumerations shared by the battle inference core.

Includes the battlefield geometry, the link type enumeration (whose order is a
contract with the trained model), action space constants and the padding
values used when flattening link data.
"""

import enum


# --- Battlefield ---
BF_SIZE = 165  # 15 columns x 11 rows of hexes
MODEL_VERSION = 13  # only supported schema/model version


# --- Link Types ---
class LinkType(enum.IntEnum):
    """
    Directed relations between two hexes.

    The numeric value is the position of the link type in every flattened
    tensor, so the order must match the one the model was trained with.
    """

    ADJACENT = 0  # dst is a neighbouring hex of src
    REACH = 1  # stack on src can reach dst this turn
    ACTS_BEFORE = 2  # stack on src acts before the stack on dst
    RANGED_MOD = 3  # ranged damage modifier from src to dst
    RANGED_DMG_REL = 4  # ranged damage relative to dst's available health
    MELEE_DMG_REL = 5  # melee damage relative to dst's available health
    RETAL_DMG_REL = 6  # retaliation damage relative to src's available health


LT_COUNT = len(LinkType)


class Side(enum.IntEnum):
    """Which army the model plays."""

    ATTACKER = 0
    DEFENDER = 1
    BOTH = 2  # trained for either army


# --- Action Space ---
class ActionCategory(enum.IntEnum):
    """Top-level (first head) action categories."""

    WAIT = 0
    MOVE = 1
    AMOVE = 2  # move then melee attack
    SHOOT = 3


N_CATEGORIES = len(ActionCategory)

# Control actions (not part of the regular action space)
ACTION_UNSET = -666
ACTION_RESET = -1


# --- Flattening ---
EDGE_PAD_INDEX = 0  # same value as a real pointer to hex 0
EDGE_PAD_ATTR = 0.0
NEIGHBOR_PAD = -1  # never a valid edge position


# --- Sampling ---
UNIFORM_TEMPERATURE = 1e8  # above this: uniform over valid entries
GREEDY_TEMPERATURE = 1e-8  # below this: arg-max over valid entries

# Number of raw tensors returned by a predict{N} method
N_MODEL_OUTPUTS = 10
