"""
Per-locale message dictionaries.

Each locale is a flat ``key -> string`` mapping. The category service gets
one of these handed to it at construction; views look strings up through
``blog.t()``.
"""
from __future__ import annotations

SUCCESS = "Success"

EN = {
    # titles
    "title.home": "Home",
    "title.login": "Log in",
    "title.register": "Register",
    "title.dashboard": "Dashboard",
    "title.admin": "Administration",
    "title.categories": "Categories",
    "title.newPost": "New post",
    "title.search": "Search",
    "title.error": "Error",
    # navigation
    "nav.home": "Home",
    "nav.login": "Log in",
    "nav.register": "Register",
    "nav.logout": "Log out",
    "nav.dashboard": "Dashboard",
    "nav.admin": "Admin",
    "nav.newPost": "New post",
    "nav.olderPosts": "View older posts",
    # form labels
    "form.search": "Search",
    "form.name": "Name",
    "form.email": "Email",
    "form.password": "Password",
    "form.confirmPassword": "Confirm password",
    "form.title": "Title",
    "form.body": "Body",
    "form.images": "Images",
    "form.categories": "Categories",
    "form.login": "Log in",
    "form.register": "Register",
    "form.addNewPost": "Add new post",
    "form.save": "Save",
    # validation
    "validation.isRequired": "This field is required.",
    "validation.emailIsRequired": "Email is required.",
    "validation.emailIsInvalid": "Email is not valid.",
    "validation.emailAlreadyExists": "An account with this email already exists.",
    "validation.passwordIsRequired": "Password is required.",
    "validation.passwordTooShort": "Password must have at least 6 characters.",
    "validation.confirmPasswordIsRequired": "Please confirm the password.",
    "validation.passwordsMustMatch": "Passwords must match.",
    "validation.invalidImageFormat": "Only JPEG, PNG and GIF images are allowed.",
    "validation.unknownCategory": "Unknown category.",
    # general messages
    "messages.invalidCredentials": "Invalid email or password.",
    "messages.youAreLoggedIn": "You are logged in.",
    "messages.youAreRegisteredAndLoggedIn": "You are registered and logged in.",
    "messages.youAreLoggedOut": "You are logged out.",
    "messages.notFound": "was not found.",
    "messages.somethingWentWrong": "Something went wrong.",
    "messages.unauthorized": "Not authorized.",
    "messages.postSaved": "Post saved.",
    "messages.csrfUnavailable": "CSRF token not available.",
    "messages.tooManyRequests": "Too many requests, try again later.",
    "messages.forbidden": "You are not allowed to do that.",
    "messages.pageNotFound": "The page you asked for does not exist.",
    "messages.postNotFound": "Post",
    "messages.noPosts": "No posts yet.",
    "messages.noResults": "Nothing matched your search.",
    "messages.written": "Written by",
    # category actions
    "categories.invalidData": "Invalid data.",
    "categories.unknownAction": "Unknown action.",
    "categories.invalidRenameData": "Invalid data for rename.",
    "categories.notFound": "Category not found.",
    "categories.missingAfterId": "Missing id of the category to add after.",
    "categories.missingParentId": "Missing id of the parent category.",
    "categories.parentNotFound": "Parent category not found.",
    "categories.missingDeleteId": "Missing id of the category to delete.",
    "categories.missingUpId": "Missing id of the category to move up.",
    "categories.alreadyAtTop": "Category is already at the top of the list.",
    "categories.previousNotFound": "Previous category not found.",
    "categories.missingDownId": "Missing id of the category to move down.",
    "categories.nothingToMove": "There are no categories to move down.",
    "categories.alreadyAtBottom": "Category is already at the bottom of the list.",
    "categories.nextNotFound": "Next category not found.",
    "categories.confirmDelete": (
        "Are you sure you want to delete this category and all its subcategories?"
    ),
    "categories.addFirst": "Add first",
    "categories.add": "Add",
    "categories.addNested": "Add nested",
    "categories.delete": "Delete",
    "categories.up": "Up",
    "categories.down": "Down",
}

SK = {
    **EN,
    "title.home": "Domov",
    "title.login": "Prihlásenie",
    "title.register": "Registrácia",
    "title.dashboard": "Nástenka",
    "title.admin": "Administrácia",
    "title.categories": "Kategórie",
    "title.newPost": "Nový príspevok",
    "title.search": "Hľadanie",
    "title.error": "Chyba",
    "nav.home": "Domov",
    "nav.login": "Prihlásiť sa",
    "nav.register": "Registrovať sa",
    "nav.logout": "Odhlásiť sa",
    "nav.dashboard": "Nástenka",
    "nav.admin": "Admin",
    "nav.newPost": "Nový príspevok",
    "nav.olderPosts": "Staršie príspevky",
    "form.search": "Hľadať",
    "form.name": "Meno",
    "form.email": "Email",
    "form.password": "Heslo",
    "form.confirmPassword": "Potvrdenie hesla",
    "form.title": "Názov",
    "form.body": "Obsah",
    "form.images": "Obrázky",
    "form.categories": "Kategórie",
    "form.login": "Prihlásiť sa",
    "form.register": "Registrovať sa",
    "form.addNewPost": "Pridať príspevok",
    "form.save": "Uložiť",
    "validation.isRequired": "Pole je povinné.",
    "validation.emailIsRequired": "Email je povinný.",
    "validation.emailIsInvalid": "Email nie je platný.",
    "validation.emailAlreadyExists": "Účet s týmto emailom už existuje.",
    "validation.passwordIsRequired": "Heslo je povinné.",
    "validation.passwordTooShort": "Heslo musí mať aspoň 6 znakov.",
    "validation.confirmPasswordIsRequired": "Potvrďte heslo.",
    "validation.passwordsMustMatch": "Heslá sa musia zhodovať.",
    "validation.invalidImageFormat": "Povolené sú iba obrázky JPEG, PNG a GIF.",
    "validation.unknownCategory": "Neznáma kategória.",
    "messages.invalidCredentials": "Nesprávny email alebo heslo.",
    "messages.youAreLoggedIn": "Ste prihlásený.",
    "messages.youAreRegisteredAndLoggedIn": "Ste zaregistrovaný a prihlásený.",
    "messages.youAreLoggedOut": "Ste odhlásený.",
    "messages.notFound": "nebolo nájdené.",
    "messages.somethingWentWrong": "Niečo sa pokazilo.",
    "messages.unauthorized": "Neautorizovaný prístup.",
    "messages.postSaved": "Príspevok uložený.",
    "messages.csrfUnavailable": "CSRF token nie je k dispozícii.",
    "messages.tooManyRequests": "Príliš veľa požiadaviek, skúste to neskôr.",
    "messages.forbidden": "Na túto akciu nemáte oprávnenie.",
    "messages.pageNotFound": "Stránka, ktorú hľadáte, neexistuje.",
    "messages.postNotFound": "Príspevok",
    "messages.noPosts": "Zatiaľ žiadne príspevky.",
    "messages.noResults": "Nič sa nenašlo.",
    "messages.written": "Autor",
    "categories.invalidData": "Neplatné dáta",
    "categories.unknownAction": "Neznáma akcia",
    "categories.invalidRenameData": "Neplatné dáta pre úpravu",
    "categories.notFound": "Kategória nenájdená",
    "categories.missingAfterId": "Chýba ID kategórie, za ktorou sa pridáva nová",
    "categories.missingParentId": "Chýba ID nadradenej kategórie",
    "categories.parentNotFound": "Nadradená kategória nenájdená",
    "categories.missingDeleteId": "Chýba ID kategórie na odstránenie",
    "categories.missingUpId": "Chýba ID kategórie na presunutie hore",
    "categories.alreadyAtTop": "Kategória je už na vrchole zoznamu",
    "categories.previousNotFound": "Predchádzajúca kategória nenájdená",
    "categories.missingDownId": "Chýba ID kategórie na presunutie dole",
    "categories.nothingToMove": "Neexistujú kategórie na presunutie dole",
    "categories.alreadyAtBottom": "Kategória je už na konci zoznamu",
    "categories.nextNotFound": "Nasledujúca kategória nenájdená",
    "categories.confirmDelete": (
        "Naozaj chcete odstrániť túto kategóriu a všetky jej podkategórie?"
    ),
    "categories.addFirst": "Pridať prvú",
    "categories.add": "Pridať",
    "categories.addNested": "Pridať vnorenú",
    "categories.delete": "Odstrániť",
    "categories.up": "Hore",
    "categories.down": "Dole",
}

LOCALES = {"en": EN, "sk": SK}

# top-level domain -> locale
DOMAIN_LOCALES = {"sk": "sk", "com": "en"}


def dictionary(locale: str | None) -> dict[str, str]:
    """Return the mapping for *locale*, falling back to English."""
    return LOCALES.get((locale or "").lower(), EN)
