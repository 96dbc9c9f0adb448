STANDARD_LOG_LEVELS = {
    "DEBUG": {"color": "#DC5F00", "icon": "🕸️", "loguru_color": "<fg #DC5F00>"},
    "INFO": {"color": "#FC5F39", "icon": "📰", "loguru_color": "<fg #FC5F39>"},
    "WARNING": {"color": "#DC5F00", "icon": "⚠️", "loguru_color": "<fg #DC5F00>"},
    "ERROR": {"color": "#ff0000", "icon": "❌", "loguru_color": "<fg #ff0000>"},
    "CRITICAL": {"color": "#ff0000", "icon": "💀", "loguru_color": "<fg #ff0000>"},
}

CUSTOM_LOG_LEVELS = {
    "REELQUEUE": {
        "color": "#7871d6",
        "icon": "🎞️",
        "loguru_color": "<fg #7871d6>",
        "no": 50,
    },
    "SCHEDULER": {
        "color": "#006989",
        "icon": "🗂️",
        "loguru_color": "<fg #006989>",
        "no": 45,
    },
    "RETRY": {
        "color": "#d6bb71",
        "icon": "🔁",
        "loguru_color": "<fg #d6bb71>",
        "no": 35,
    },
    "DATABASE": {
        "color": "#5aa5d9",
        "icon": "💾",
        "loguru_color": "<fg #5aa5d9>",
        "no": 32,
    },
    "TRIGGER": {
        "color": "#71d6d6",
        "icon": "⏰",
        "loguru_color": "<fg #71d6d6>",
        "no": 30,
    },
    "WORKER": {
        "color": "#5fba64",
        "icon": "🏭",
        "loguru_color": "<fg #5fba64>",
        "no": 25,
    },
}
