from section_studio.db.repositories.pages import PagesRepository
from section_studio.db.repositories.sections import SectionsRepository
from section_studio.db.repositories.images import ImageAssetsRepository
from section_studio.db.repositories.history import RegenerationHistoryRepository
from section_studio.db.repositories.generation_runs import GenerationRunsRepository
