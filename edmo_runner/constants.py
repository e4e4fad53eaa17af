"""Named constants: eliminates magic strings across the codebase."""

from __future__ import annotations

PARAM_PREFIX = "param:"
UNSUPPORTED_PREFIX = "unsupported:"

FUNC_REF_PATTERN = r"<function:(\w+)@(\w+)>"
FUNC_REF_TEMPLATE = "<function:{name}@{label}>"

OBJ_ADDR_PREFIX = "obj_"
ARR_ADDR_PREFIX = "arr_"

FUNC_LABEL_PREFIX = "func_"

MAIN_FRAME_NAME = "<main>"
CFG_ENTRY_LABEL = "entry"

LANGUAGE = "javascript"

# ── Capability names as seen by generated code ───────────────────

CAP_SET_SERVO_ROTATION = "setServoRotation"
CAP_SET_OSCILLATOR = "setOscillator"
CAP_STOP_OSCILLATOR = "stopOscillator"
CAP_SLEEP = "sleep"
CAP_ALERT = "alert"
CAP_PROMPT = "prompt"
CAP_HIGHLIGHT_BLOCK = "highlightBlock"

REQUIRED_CAPABILITIES: tuple[str, ...] = (
    CAP_SET_SERVO_ROTATION,
    CAP_SET_OSCILLATOR,
    CAP_STOP_OSCILLATOR,
    CAP_SLEEP,
    CAP_ALERT,
    CAP_PROMPT,
    CAP_HIGHLIGHT_BLOCK,
)

BLOCKING_CAPABILITIES: frozenset[str] = frozenset({CAP_SLEEP})

# ── Guards ───────────────────────────────────────────────────────

LOOP_TRAP_LIMIT = 1000
NATIVE_LOOP_LIMIT = 100_000
STEP_SAFETY_LIMIT = 100_000
MAX_CALL_DEPTH = 1000
INFINITE_LOOP_MESSAGE = "INFINITE_LOOP_DETECTED"
NATIVE_GUARD_PREFIX = "__loopGuard"

REASON_ITERATIONS = "iterations"
REASON_TIMEOUT = "timeout"

# ── Scheduling ───────────────────────────────────────────────────

STEPS_PER_TICK = 1000
RESCHEDULE_DELAY = 0.0

# ── Actuators ────────────────────────────────────────────────────

MIN_LIMB_DEGREES = -90.0
MAX_LIMB_DEGREES = 90.0
ROTATION_DURATION = 0.6
NEUTRAL_DEGREES = 0.0
OSCILLATOR_ANGLE_SHIFT = 90.0
MAX_SERVO_LETTERS = 26

# ── Robot link ───────────────────────────────────────────────────

DEFAULT_ROBOT_URL = "ws://localhost:8080"
MAX_RECONNECT_ATTEMPTS = 5
RECONNECT_DELAY = 2.0
ROBOT_CMD_SET_ARM_ANGLE = "setArmAngle"
