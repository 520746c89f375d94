# constants.py

"""
Application Constants

This module defines static configuration values for the simulator and its
renderer. Simulation values are defaults: any key present in the 'simulation'
section of config.json overrides the value here.

Data Contract:
- All values are immutable constants.
- Units are simulation units unless specified in comments.
"""

# --- Flocking rule defaults ---
COHESION_DISTANCE = 5.0     # Rule 1 radius
SEPARATION_DISTANCE = 3.0   # Rule 2 radius
ALIGNMENT_DISTANCE = 5.0    # Rule 3 radius

COHESION_SCALE = 0.01
SEPARATION_SCALE = 0.1
ALIGNMENT_SCALE = 0.1

MAX_SPEED = 1.0

# Separation only counts neighbors closer than this, regardless of the rule 2 radius.
SEPARATION_GUARD_DISTANCE = 100.0

# --- Domain ---
HALF_EXTENT = 100.0  # The domain is the cube [-HALF_EXTENT, HALF_EXTENT]^3
DEFAULT_DT = 0.2
DEFAULT_STRATEGY = "coherent_grid"

# --- Screen dimensions ---
WIDTH = 1200  # Pixels
HEIGHT = 1200  # Pixels

# Framerate
FPS = 60  # Frames per second

# Window Title
TITLE = "Boids"

# Defines the speed color spectrum as a series of keyframes.
# Each keyframe is a tuple: (normalized_speed, (R, G, B) color).
COLOR_GRADIENT_KEYFRAMES = [
    (0.0,   (40, 40, 120)),      # Slate
    (0.35,  (0, 120, 255)),      # Blue
    (0.7,   (0, 255, 180)),      # Teal
    (1.0,   (255, 255, 255))     # White
]

# Visual Effects
TRAIL_EFFECT_COLOR = (0, 0, 0, 60) # RGBA. Alpha controls trail length (lower = longer).
BOID_RADIUS = 2 # Pixels
