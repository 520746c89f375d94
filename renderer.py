# renderer.py

import numpy as np
import pygame
import constants


def project_to_screen(positions: np.ndarray, scale: float, bias) -> np.ndarray:
    """
    Orthographic projection of (N, 3) simulation positions onto the screen.
    Screen x follows simulation x; screen y follows simulation y, flipped so
    that +y points up. This transform is presentation only.
    """
    screen = np.empty((positions.shape[0], 2), dtype=np.int32)
    screen[:, 0] = (positions[:, 0] * scale + bias[0]).astype(np.int32)
    screen[:, 1] = (-positions[:, 1] * scale + bias[1]).astype(np.int32)
    return screen


def speed_to_color(norm_speed: float):
    """
    Maps a speed normalized by max_speed (0 = still, 1 = at the cap) to a color
    by linearly interpolating between the gradient keyframes.
    """
    # Find the two keyframes the speed falls between.
    for i in range(len(constants.COLOR_GRADIENT_KEYFRAMES) - 1):
        pos1, color1 = constants.COLOR_GRADIENT_KEYFRAMES[i]
        pos2, color2 = constants.COLOR_GRADIENT_KEYFRAMES[i+1]

        if pos1 <= norm_speed <= pos2:
            local_t = (norm_speed - pos1) / (pos2 - pos1)
            r = int(color1[0] * (1 - local_t) + color2[0] * local_t)
            g = int(color1[1] * (1 - local_t) + color2[1] * local_t)
            b = int(color1[2] * (1 - local_t) + color2[2] * local_t)
            return (r, g, b)

    # Outside the range (floating point error), use the end color.
    return constants.COLOR_GRADIENT_KEYFRAMES[-1][1]


def draw_boids(screen: pygame.Surface, positions: np.ndarray, velocities: np.ndarray, max_speed: float,
               scale: float, bias):
    """
    Draws every boid as a small circle colored by its speed.

    Data Contract:
    - Inputs: read-only snapshots from BoidSystem.get_positions()/get_velocities().
    - Side Effects: Draws onto screen.
    """
    points = project_to_screen(positions, scale, bias)
    speeds = np.linalg.norm(velocities, axis=1)
    sane_speeds = np.nan_to_num(speeds, nan=0.0, posinf=max_speed, neginf=0.0)
    normalized = np.clip(sane_speeds / max_speed, 0, 1)

    for i in range(points.shape[0]):
        pygame.draw.circle(
            screen,
            speed_to_color(normalized[i]),
            (int(points[i, 0]), int(points[i, 1])),
            constants.BOID_RADIUS
        )
