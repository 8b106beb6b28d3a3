"""Shopping assistant core: constraint parsing, personalized retrieval and discovery."""
