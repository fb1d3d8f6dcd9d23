"""BudgetQuest: gamification engine for a personal-finance budgeting backend."""
