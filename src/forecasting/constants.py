"""
Shared constants for the forecasting engine.
Single source of truth for the dimension order and message tables.
"""

# ─── Dimensions ──────────────────────────────────────────────

# Fixed order of the latent / observed vector. Never reindex.
DIMENSIONS = (
    "sleep_efficiency",
    "sleep_onset_latency",
    "wake_after_sleep_onset",
    "total_sleep_time",
    "sleep_quality",
)
DIMENSION_INDEX = {name: i for i, name in enumerate(DIMENSIONS)}

SE, SOL, WASO, TST, QUALITY = range(len(DIMENSIONS))

# Cohort prior in normalized units (SE 85%, SOL 18 min, WASO 27 min,
# TST 7.2 h, quality 0.6). Initial parameters make this a fixed point.
PRIOR_STATE = (0.85, 0.15, 0.15, 0.60, 0.60)

# Dendritic thresholds are spread over this normalized range
DENDRITIC_THRESHOLD_RANGE = (0.2, 0.8)

HORIZON_KEYS = ("short", "medium", "long")

# ─── Clinical thresholds ─────────────────────────────────────

# SE below this is treated as the critical zone for trend / time-to-critical
CRITICAL_SE = 75.0

# Forecast change (SE points) that counts as a real move
TREND_CHANGE_POINTS = 5.0

# |SE - TST/TIB*100| above this gets logged as inconsistent
EFFICIENCY_MISMATCH_TOLERANCE = 5.0

Z_95 = 1.96

# Severity tiers: ratio of observed change to its threshold
SEVERITY_TIERS = (
    (3.0, "critical"),
    (2.0, "high"),
    (1.5, "moderate"),
)

SEVERITY_RISK = {
    "critical": 0.20,
    "high": 0.15,
    "moderate": 0.10,
    "low": 0.05,
}

TREND_BASE_RISK = {
    "critical": 0.45,
    "declining": 0.25,
    "stable": 0.10,
    "improving": 0.05,
}

# Critical-slowing-down indicators (pattern_disruption warnings)
EWS_MIN_STRENGTH = 0.5
EWS_AUTOCORR_RISE = 0.1
EWS_AUTOCORR_FLOOR = 0.5
EWS_VARIANCE_RATIO = 1.5
EWS_FLICKER_MIN = 0.3
# Normalized-unit floors: movements smaller than this are not a signal
EWS_VARIANCE_FLOOR = 1e-4
EWS_AMPLITUDE_FLOOR = 1e-3

# ─── Messages ────────────────────────────────────────────────

WARNING_MESSAGES = {
    "efficiency_drop": {
        "ru": "Прогноз: снижение эффективности сна на {value:.0f}%",
        "en": "Forecast: sleep efficiency drop by {value:.0f}%",
    },
    "sol_increase": {
        "ru": "Прогноз: увеличение времени засыпания на {value:.0f} мин",
        "en": "Forecast: sleep onset latency increase by {value:.0f} min",
    },
    "waso_increase": {
        "ru": "Прогноз: увеличение пробуждений ночью на {value:.0f} мин",
        "en": "Forecast: wake after sleep onset increase by {value:.0f} min",
    },
    "variance_spike": {
        "ru": "Обнаружена повышенная нестабильность сна ({metric})",
        "en": "Increased sleep instability detected ({metric})",
    },
    "autocorrelation": {
        "ru": "Обнаружен паттерн \"застревания\" в текущем состоянии сна",
        "en": "Sleep state \"stickiness\" pattern detected",
    },
    "variance": {
        "ru": "Повышенная вариабельность сна - возможен переход",
        "en": "Increased sleep variability - possible transition",
    },
    "flickering": {
        "ru": "Колебания качества сна между состояниями",
        "en": "Sleep quality oscillating between states",
    },
}

WARNING_RECOMMENDATIONS = {
    "efficiency_drop": {
        "ru": "Следите за режимом сна в ближайшие дни",
        "en": "Keep a close eye on your sleep schedule over the next few days",
    },
    "efficiency_drop_severe": {
        "ru": "Рекомендуется усилить режим сна и обратиться к программе",
        "en": "Tighten your sleep schedule and return to the program",
    },
    "sol_increase": {
        "ru": "Практикуйте техники расслабления перед сном",
        "en": "Practice relaxation techniques before bed",
    },
    "waso_increase": {
        "ru": "Проверьте факторы окружающей среды (шум, температура)",
        "en": "Check environmental factors (noise, temperature)",
    },
    "variance_spike": {
        "ru": "Старайтесь соблюдать постоянный режим сна",
        "en": "Try to keep a consistent sleep schedule",
    },
    "pattern_disruption": {
        "ru": "Рекомендуется профилактическая интервенция",
        "en": "A preventive intervention is recommended",
    },
}

RECOMMENDATIONS = {
    "review_program": {
        "ru": "Рекомендуется пересмотреть текущую программу CBT-I",
        "en": "Consider reviewing your current CBT-I program",
    },
    "sleep_restriction": {
        "ru": "Рассмотрите сокращение времени в постели (Sleep Restriction)",
        "en": "Consider reducing time in bed (sleep restriction)",
    },
    "relaxation": {
        "ru": "Практикуйте релаксационные техники перед сном",
        "en": "Practice relaxation techniques before bed",
    },
    "sleepy_only": {
        "ru": "Ложитесь только когда чувствуете сонливость",
        "en": "Go to bed only when you feel sleepy",
    },
    "get_up": {
        "ru": "При пробуждении ночью - вставайте из постели",
        "en": "If you wake up at night, get out of bed",
    },
    "bedroom": {
        "ru": "Проверьте температуру и комфорт в спальне",
        "en": "Check bedroom temperature and comfort",
    },
    "continue": {
        "ru": "Продолжайте следовать текущей программе",
        "en": "Keep following your current program",
    },
}

MAX_RECOMMENDATIONS = 5
