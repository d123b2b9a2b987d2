"""Zero-shot allergen extraction prompt and per-family chat templates."""

from __future__ import annotations

from enum import StrEnum

from allergen_eval.labels import LABEL_ORDER

INGREDIENTS_HEADER = "Ingredients to analyze:"

# Derived ingredients that imply each allergen.
DERIVED_INGREDIENTS: dict[str, tuple[str, ...]] = {
    "milk": ("butter", "cheese", "cream", "yogurt", "whey", "casein", "lactose", "ghee"),
    "egg": ("egg white", "egg yolk", "albumin", "mayonnaise", "meringue"),
    "peanut": ("peanut butter", "arachis oil", "goober"),
    "tree nut": (
        "almond",
        "walnut",
        "cashew",
        "pecan",
        "pistachio",
        "macadamia",
        "hazelnut",
    ),
    "wheat": ("flour", "semolina", "bread crumbs", "gluten", "spelt", "couscous", "durum"),
    "soy": ("soy sauce", "tofu", "soy protein", "edamame", "lecithin", "miso", "tempeh"),
    "fish": ("salmon", "tuna", "cod", "anchovy", "bass", "tilapia"),
    "shellfish": ("shrimp", "crab", "lobster", "prawn", "clam", "oyster", "scallop"),
    "sesame": ("tahini", "sesame oil", "benne seeds", "za'atar"),
}


class PromptFormat(StrEnum):
    """Chat template families understood by the prompt builder."""

    CHATML = "chatml"
    PHI = "phi"
    LLAMA3 = "llama3"
    GEMMA = "gemma"
    INST = "inst"


def system_message() -> str:
    """Instruction block shared by every template."""
    guide = "\n".join(
        f"- {label}: {', '.join(DERIVED_INGREDIENTS[label])}" for label in LABEL_ORDER
    )
    return (
        "You are a strict Food Safety Officer.\n"
        "Analyze the ingredients list and extract ONLY allergens from this specific list:\n"
        f"[{', '.join(LABEL_ORDER)}].\n"
        "\n"
        "Reference Guide (Derived Ingredients Mapping):\n"
        f"{guide}\n"
        "\n"
        "Rules:\n"
        "1. Identify allergens by direct mention OR by matching any item from the "
        "Reference Guide.\n"
        '2. Output ONLY detected allergens from the target list (e.g., "milk, wheat").\n'
        "3. Format the output as a lowercase, comma-separated list.\n"
        "4. If no allergens are found, output exactly: EMPTY\n"
        "5. NEVER include explanations, preambles, or extra text."
    )


def detect_prompt_format(model_filename: str) -> PromptFormat:
    """Pick the chat template from a model file name."""
    name = model_filename.lower()
    if "qwen" in name:
        return PromptFormat.CHATML
    if "phi" in name:
        return PromptFormat.PHI
    if "llama-3" in name:
        return PromptFormat.LLAMA3
    if "gemma" in name:
        return PromptFormat.GEMMA
    return PromptFormat.INST


def build_prompt(
    ingredients: str,
    model_filename: str,
    prompt_format: PromptFormat | None = None,
) -> str:
    """Render the allergen extraction prompt for a model.

    Args:
        ingredients: Ingredient list of the food item.
        model_filename: Model file name, used to detect the chat template.
        prompt_format: Explicit template, overriding detection.

    Returns:
        The full prompt string passed to inference.
    """
    fmt = prompt_format or detect_prompt_format(model_filename)
    sys_msg = system_message()
    user_msg = f"{INGREDIENTS_HEADER}\n{ingredients}"

    if fmt == PromptFormat.CHATML:
        return (
            f"<|im_start|>system\n{sys_msg}<|im_end|>\n"
            f"<|im_start|>user\n{user_msg}<|im_end|>\n"
            "<|im_start|>assistant\n"
        )
    if fmt == PromptFormat.PHI:
        # Phi follows instructions better when they are part of the user turn.
        return f"<|user|>\n{sys_msg}\n\n{user_msg}<|end|>\n<|assistant|>\n"
    if fmt == PromptFormat.LLAMA3:
        return (
            "<|begin_of_text|><|start_header_id|>system<|end_header_id|>\n\n"
            f"{sys_msg}<|eot_id|>"
            f"<|start_header_id|>user<|end_header_id|>\n\n{user_msg}<|eot_id|>"
            "<|start_header_id|>assistant<|end_header_id|>\n"
        )
    if fmt == PromptFormat.GEMMA:
        return (
            f"<start_of_turn>user\n{sys_msg}\n\n{user_msg}<end_of_turn>\n"
            "<start_of_turn>model\n"
        )
    return f"[INST] {sys_msg} \n\n {user_msg} [/INST]\n"


def extract_ingredients(prompt: str) -> str:
    """Recover the ingredient list from a prompt built by ``build_prompt``."""
    _, _, tail = prompt.partition(f"{INGREDIENTS_HEADER}\n")
    for terminator in ("<|im_end|>", "<|end|>", "<|eot_id|>", "<end_of_turn>", " [/INST]"):
        tail = tail.split(terminator, 1)[0]
    return tail.strip()
