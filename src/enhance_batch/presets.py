MODE_INSTRUCTIONS = {
    "natural_light": (
        "High-end natural window light, soft diffused daylight, organic textures, appetizing clarity, "
        "4k, photorealistic, neutral white balance."
    ),
    "studio_light": (
        "Professional 3-point studio lighting, crisp specular highlights, deep commercial contrast, "
        "editorial style, 4k, sharp focus on food hero."
    ),
}

# None means keep the source dimensions.
SHAPES: dict[str, tuple[int, int] | None] = {
    "AUTO": None,
    "1:1": (3840, 3840),
    "3:4": (2880, 3840),
    "4:3": (3840, 2880),
    "4:5": (3072, 3840),
    "5:4": (3840, 3072),
    "9:16": (2160, 3840),
    "16:9": (3840, 2160),
    "2:3": (2560, 3840),
    "3:2": (3840, 2560),
}

PLAN_MONTHLY_CREDITS = {
    "free": 3,
    "starter": 20,
    "pro": 100,
    "agency": 500,
}

TOPUP_PACKS = {
    "topup_10": 10,
    "topup_50": 50,
    "topup_100": 100,
}

EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/heic": "heic",
}
