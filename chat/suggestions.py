"""Quick-action prompts shown under the input box, by category."""

SUGGESTIONS = {
    "Web Development": [
        "Explain React Hooks",
        "What is CSS Grid?",
        "How to use async/await?",
    ],
    "AI & Machine Learning": [
        "What is overfitting in ML?",
        "Explain neural networks",
        "What is transfer learning?",
    ],
    "Data Science": [
        "What is pandas?",
        "Explain data visualization",
        "What is feature engineering?",
    ],
    "General Science": [
        "What is quantum computing?",
        "Explain blockchain technology",
        "What is cloud computing?",
    ],
    "Programming": [
        "How to reverse a string in JavaScript?",
        "What is recursion?",
        "Explain object-oriented programming",
    ],
}


def suggestions_for(category):
    if not category:
        return []
    return list(SUGGESTIONS.get(category, []))
