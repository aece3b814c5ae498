"""
Rendering.

Responsibilities:
- Offscreen alpha compositing over a replacement background
- HUD, waveform and debug overlays
- Camera error screen
"""

from .compositor import Compositor
from .overlays import HudRenderer, WaveformRenderer, draw_debug_thumbnails
