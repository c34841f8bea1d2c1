"""Create demo vignettes for development/testing."""

import shutil

from convo_sim import storage
from convo_sim.models import VignetteConfig

MED_001 = {
    "id": "MED-001",
    "title": "The Adenosine Error",
    "category": "medical_error_disclosure",
    "description": "Disclose a medication error to the spouse of a patient who "
    "arrested after adenosine was given for what turned out to be ventricular tachycardia.",
    "difficulty_levels": ["beginner", "intermediate", "advanced"],
    "persona": {
        "name": "Margaret Wilson",
        "role": "the patient's wife of 45 years, a retired teacher",
        "initial_emotion": "anxious",
        "traits": {
            "beginner": "Shocked and seeking understanding, ultimately reasonable. "
            "Softens when met with empathy; confused and hurt by defensiveness.",
            "intermediate": "Angry and demanding accountability, but can be reached. "
            "Challenges sincerity at first and wants specific details.",
            "advanced": "Hostile and close to inconsolable, talking about a lawyer. "
            "Treats empathy as manipulation and any excuse as an admission.",
        },
        "voice_config": {
            "enabled": True,
            "context_brief": "You're an emergency physician in a family consultation room "
            "near the ICU. A 72-year-old man with cardiomyopathy was given adenosine for "
            "what was thought to be SVT with aberrancy; it was ventricular tachycardia. "
            "He arrested, was resuscitated, and is now intubated. His wife Margaret has "
            "been waiting to speak with you.",
            "opening_line": "Doctor? The nurse said you needed to speak with me about my "
            "husband. Is everything okay? He seemed stable when I left last night.",
            "closing_line": "I need to call our daughter. Thank you for talking to me, doctor.",
            "voice_profile": {
                "elevenlabs_voice_id": "FrCDCQwye0euHmliGxP9",
                "display_label": "Margaret (spouse)",
                "stability": 0.55,
                "similarity_boost": 0.75,
            },
        },
    },
    "facts": [
        "Robert Wilson, 72, has known cardiomyopathy.",
        "He came in with a fast heart rhythm that was read as SVT with aberrancy.",
        "He was given adenosine; the rhythm was actually ventricular tachycardia.",
        "He went into cardiac arrest and was resuscitated after CPR and defibrillation.",
        "He is now intubated and sedated in the ICU; the next 24 hours are critical.",
        "The case has been reported for a patient safety review.",
    ],
    "escalation_triggers": [
        "calm down", "it happens", "not my fault", "standard procedure",
        "protocol", "unavoidable", "these things happen", "you need to relax",
    ],
    "deescalation_cues": [
        "i'm sorry", "i am sorry", "i apologize", "i understand", "take your time",
        "i made a mistake", "we made a mistake", "that must be",
    ],
    "disallowed_phrases": ["it's not a big deal", "nothing could have been done"],
    "contradicting_claims": ["he is fine", "no mistake was made", "there was no error"],
    "phases": [
        {
            "id": "opening",
            "order": 1,
            "name": "Introduction",
            "goal": "Establish rapport and find out what Margaret already knows.",
            "exit_condition": {
                "max_turns": 3,
                "score_threshold": {"dimension": "empathy", "min_score": 3.5, "min_samples": 2},
            },
            "rubric_focus": ["empathy", "clarity"],
            "opening_line": "Doctor? The nurse said you needed to speak with me about my husband.",
            "objectives": [
                {"id": "introduce", "text": "Introduce self clearly", "keywords": ["my name is", "i'm dr", "i am dr"]},
                {
                    "id": "acknowledge_seriousness",
                    "text": "Acknowledge serious nature",
                    "keywords": ["serious", "difficult news", "bad news"],
                },
                {
                    "id": "privacy",
                    "text": "Ensure privacy and comfort",
                    "keywords": ["sit down", "private", "somewhere quiet"],
                },
            ],
        },
        {
            "id": "disclosure",
            "order": 2,
            "name": "Error Disclosure",
            "goal": "Learn plainly what happened and that it was an error.",
            "exit_condition": {
                "max_turns": 4,
                "max_turns_by_difficulty": {"advanced": 5},
                "score_threshold": {"dimension": "accountability", "min_score": 3.5, "min_samples": 2},
            },
            "rubric_focus": ["clarity", "accountability"],
            "escalation_triggers": ["complicated", "rare"],
            "objectives": [
                {
                    "id": "state_error",
                    "text": "State clearly that an error occurred",
                    "keywords": ["mistake", "error", "wrong medication"],
                    "removed_keywords": {"advanced": ["error"]},
                },
                {"id": "plain_language", "text": "Explain in plain language", "keywords": ["in other words", "heart rhythm"]},
                {
                    "id": "responsibility",
                    "text": "Accept responsibility",
                    "keywords": ["my responsibility", "i made", "we made"],
                    "additional_keywords": {"beginner": ["our fault"]},
                },
                {"id": "regret", "text": "Express appropriate regret", "keywords": ["i'm sorry", "i am sorry", "i apologize"]},
            ],
        },
        {
            "id": "emotional_processing",
            "order": 3,
            "name": "Emotional Response",
            "goal": "Express grief and anger and see whether the doctor stays with you.",
            "exit_condition": {
                "max_turns": 4,
                "emotion_threshold": {"value": 0.0, "direction": "below"},
            },
            "rubric_focus": ["empathy", "de_escalation"],
            "objectives": [
                {"id": "acknowledge_emotions", "text": "Acknowledge emotions", "keywords": ["you feel", "understandable", "of course you"]},
                {"id": "stay_present", "text": "Remain calm and present", "keywords": ["i'm here", "take your time", "not going anywhere"]},
                {"id": "keep_answering", "text": "Continue answering questions"},
            ],
        },
        {
            "id": "next_steps",
            "order": 4,
            "name": "Next Steps",
            "goal": "Find out what happens now and how this will be prevented.",
            "exit_condition": {"max_turns": 3},
            "rubric_focus": ["clarity", "accountability"],
            "objectives": [
                {"id": "status", "text": "Explain current medical status", "keywords": ["intubated", "icu", "stable"]},
                {"id": "prognosis", "text": "Discuss prognosis honestly", "keywords": ["24 hours", "too early", "prognosis"]},
                {"id": "treatment", "text": "Outline treatment plan", "keywords": ["cardiology", "treatment", "monitoring"]},
                {"id": "prevention", "text": "Address prevention measures", "keywords": ["safety review", "prevent", "never happens again"]},
            ],
        },
    ],
    "information_stages": [
        {"id": "error_occurred", "description": "An error occurred", "keywords": ["mistake", "error"]},
        {"id": "error_nature", "description": "He was given the wrong medication", "keywords": ["adenosine", "wrong medication"]},
        {"id": "consequences", "description": "His heart stopped and he was resuscitated", "keywords": ["cardiac arrest", "heart stopped", "cpr"]},
        {"id": "current_status", "description": "He is on a ventilator in intensive care", "keywords": ["intubated", "icu", "ventilator"]},
        {"id": "prognosis", "description": "The next 24 hours are critical", "keywords": ["24 hours", "prognosis"]},
        {"id": "prevention", "description": "The case is under a patient safety review", "keywords": ["safety review", "prevent"]},
    ],
    "llm": {"model_id": "claude-3-5-haiku-20241022", "max_response_tokens": 300, "temperature": 0.7},
    "rubric_weights": {"empathy": 0.3, "clarity": 0.25, "accountability": 0.3, "de_escalation": 0.15},
    "passing_score": 3.0,
    "excellence_score": 4.0,
    "rubric_hooks": {
        "accountability": {
            "patterns": ["safety review", "we gave the wrong medication"],
            "anti_patterns": ["the rhythm was hard to read"],
        },
    },
}

PRACTICE_001 = {
    "id": "PRACTICE-001",
    "title": "Delayed Test Results",
    "category": "practice",
    "description": "A short practice run that needs no model credentials.",
    "difficulty_levels": ["beginner", "intermediate"],
    "persona": {
        "name": "Sam Patel",
        "role": "a patient whose biopsy results were delayed by two weeks",
        "initial_emotion": "upset",
    },
    "facts": ["The biopsy sample was mislabelled and had to be re-run."],
    "escalation_triggers": ["calm down", "it happens"],
    "deescalation_cues": ["i'm sorry", "i understand"],
    "phases": [
        {
            "id": "explain",
            "order": 1,
            "goal": "Hear why the results were late.",
            "exit_condition": {"max_turns": 2},
            "rubric_focus": ["clarity", "accountability"],
        },
        {
            "id": "plan",
            "order": 2,
            "goal": "Agree on what happens next.",
            "exit_condition": {"max_turns": 2},
            "rubric_focus": ["empathy", "clarity"],
        },
    ],
    "llm": {"model_id": "echo"},
}

DEMO_VIGNETTES = [MED_001, PRACTICE_001]


def create_demo_data() -> None:
    """Wipe existing vignettes and sessions and write the demo vignettes."""
    store = storage.get_storage()
    for sub in ("vignettes", "sessions"):
        path = store.base_path / sub
        if path.exists():
            shutil.rmtree(path)
    store = storage.init_storage(store.base_path)

    for data in DEMO_VIGNETTES:
        store.save_vignette(VignetteConfig.model_validate(data))
